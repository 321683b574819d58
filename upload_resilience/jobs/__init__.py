"""Job queue facade and arq job functions. Worker settings live in ``jobs.worker``."""
