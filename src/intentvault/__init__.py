from .client import CoordinatorClient, HandleBuilder, IntentClient
from .coordinator import ExecutionCoordinator, IntentLedger, IntentValidator
from .fhe import HomomorphicProvider, InMemoryHomomorphicProvider
from .protocol import (
    Approval,
    CiphertextHandle,
    EncryptedEnvelope,
    Intent,
    IntentAction,
    SettlementError,
    SettlementRequest,
    SettlementResult,
    SignedIntent,
    SwapParams,
)
from .security import CoordinatorKeyRing, HybridEncryptor, KeyCache, Keypair
from .vault import ConfidentialVault, LocalChain, VaultClient

__version__ = "0.1.0"

__all__ = [
    "CoordinatorClient",
    "HandleBuilder",
    "IntentClient",
    "ExecutionCoordinator",
    "IntentLedger",
    "IntentValidator",
    "HomomorphicProvider",
    "InMemoryHomomorphicProvider",
    "Approval",
    "CiphertextHandle",
    "EncryptedEnvelope",
    "Intent",
    "IntentAction",
    "SettlementError",
    "SettlementRequest",
    "SettlementResult",
    "SignedIntent",
    "SwapParams",
    "CoordinatorKeyRing",
    "HybridEncryptor",
    "KeyCache",
    "Keypair",
    "ConfidentialVault",
    "LocalChain",
    "VaultClient",
]
