"""
Shared in-process state (hub, derived views, batch writer, producer stats).

Set at app lifespan start; read by API routes.
"""
from __future__ import annotations

from typing import Any, Dict, Optional

from livehub.services.batch_ingest import BatchWriter
from livehub.services.derived_view import DerivedView
from livehub.services.live_broadcast import LiveHub

_hub: Optional[LiveHub] = None
_views: Dict[str, DerivedView] = {}
_batch_writer: Optional[BatchWriter] = None
_stats: Optional[Dict[str, Any]] = None


def set_hub(h: LiveHub) -> None:
    global _hub
    _hub = h


def get_hub() -> LiveHub:
    if _hub is None:
        raise RuntimeError("Hub state not initialized")
    return _hub


def set_view(name: str, view: DerivedView) -> None:
    _views[name] = view


def get_view(name: str) -> DerivedView:
    try:
        return _views[name]
    except KeyError:
        raise RuntimeError(f"Derived view {name!r} not initialized") from None


def get_views() -> Dict[str, DerivedView]:
    return dict(_views)


def set_batch_writer(w: Optional[BatchWriter]) -> None:
    global _batch_writer
    _batch_writer = w


def get_batch_writer() -> Optional[BatchWriter]:
    return _batch_writer


def set_stats(s: Dict[str, Any]) -> None:
    global _stats
    _stats = s


def get_stats() -> Dict[str, Any]:
    if _stats is None:
        raise RuntimeError("Hub state not initialized")
    return _stats


def reset() -> None:
    global _hub, _batch_writer, _stats
    _hub = None
    _batch_writer = None
    _stats = None
    _views.clear()
