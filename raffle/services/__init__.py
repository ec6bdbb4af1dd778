from .coordinator import RandomnessCoordinator, derive_random_words
from .deployment import build_raffle, deploy
from .ledger import Ledger, normalise_address
from .raffle import Raffle, system_clock

__all__ = [
    "Ledger",
    "Raffle",
    "RandomnessCoordinator",
    "build_raffle",
    "deploy",
    "derive_random_words",
    "normalise_address",
    "system_clock",
]
