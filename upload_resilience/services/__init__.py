"""Token lifecycle, health, notification and upload recovery services."""
