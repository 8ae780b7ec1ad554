"""Configuration."""

from regflow.config.settings import settings, Settings, EmailSettings

__all__ = [
    'settings',
    'Settings',
    'EmailSettings',
]
