from __future__ import annotations

from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from app.core.access import AccessCore

_core: Optional["AccessCore"] = None


def set_core(core: Optional["AccessCore"]) -> None:
    global _core
    _core = core


def get_core() -> "AccessCore":
    if _core is None:
        raise RuntimeError("access core is not initialised; the app startup hook sets it")
    return _core


def has_core() -> bool:
    return _core is not None
