"""stackplan: dependency-ordered provisioning of declared infrastructure stacks."""

from .config import EngineConfig
from .provisioning import *  # noqa: F401,F403
from .provisioning import __all__ as _provisioning_all

__all__ = ["EngineConfig", *_provisioning_all]

__version__ = "0.1.0"
