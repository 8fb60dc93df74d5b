"""PhishSense analysis engines."""

from phishsense.engines.base import BaseEngine
from phishsense.engines.behavior import BehaviorEngine
from phishsense.engines.headers import HeaderEngine
from phishsense.engines.ml import MLEngine
from phishsense.engines.reputation import ReputationEngine
from phishsense.engines.rules import RuleEngine

# Order in which findings are concatenated into the final result.
ENGINE_ORDER = ["rules", "headers", "reputation", "behavior", "ml"]

__all__ = [
    "BaseEngine",
    "BehaviorEngine",
    "ENGINE_ORDER",
    "HeaderEngine",
    "MLEngine",
    "ReputationEngine",
    "RuleEngine",
]
