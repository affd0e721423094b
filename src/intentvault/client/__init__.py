from .handles import HandleBuilder, HandleSet, LocalHandleProvider, RemoteHandleProvider
from .intent_client import IntentClient, mock_approval
from .transport import CoordinatorClient

__all__ = [
    "HandleBuilder",
    "HandleSet",
    "LocalHandleProvider",
    "RemoteHandleProvider",
    "IntentClient",
    "mock_approval",
    "CoordinatorClient",
]
