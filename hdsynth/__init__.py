from .estimators.augsynth import AUGSYNTH
from .highdim import get_progsyn, get_screensyn, get_augsyn, get_gsynaug

# Define __all__ to specify the public API of the hdsynth package
__all__ = [
    "AUGSYNTH",
    "get_progsyn",
    "get_screensyn",
    "get_augsyn",
    "get_gsynaug",
]
