from .settings import IntentVaultSettings, get_settings

__all__ = ["IntentVaultSettings", "get_settings"]
