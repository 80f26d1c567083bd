from modupdater.common.config import AppPaths, RuntimeConfig
from modupdater.common.state import UpdateCheckState, load_update_state, save_update_state

__all__ = [
    "AppPaths",
    "RuntimeConfig",
    "UpdateCheckState",
    "load_update_state",
    "save_update_state",
]
