"""Read access to stored provider credentials for API clients."""

import uuid
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..db.database import with_unit_of_work
from ..db.repositories import CloudStorageTokensRepository
from ..utils.crypto import CryptoService


class StoredCredentials:
    """Decrypts the current access token of a (user, provider) on demand."""

    def __init__(
        self, session_factory: async_sessionmaker[AsyncSession], crypto: CryptoService
    ):
        self.session_factory = session_factory
        self.crypto = crypto

    async def get_access_token(self, user_id: uuid.UUID, provider: str) -> Optional[str]:
        async with with_unit_of_work(self.session_factory) as session:
            repo = CloudStorageTokensRepository(session, self.crypto)
            token = await repo.get_token(user_id, provider)
            if token is None or token.requires_user_intervention:
                return None
            return repo.get_decrypted_access_token(token)

    async def record_connection_check(self, user_id: uuid.UUID, provider: str, ok: bool) -> None:
        async with with_unit_of_work(self.session_factory) as session:
            await CloudStorageTokensRepository(session).record_connection_check(
                user_id, provider, ok
            )
