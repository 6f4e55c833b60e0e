"""Optional begin/end instrumentation callbacks at component boundaries."""

from __future__ import annotations

from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from time import perf_counter
from typing import Any

import structlog

logger = structlog.get_logger(__name__)

BeginCallback = Callable[[str, dict[str, Any]], None]
EndCallback = Callable[[str, dict[str, Any], BaseException | None], None]


@dataclass(slots=True, frozen=True)
class InstrumentationHooks:
    """Callbacks fired around `agent.run`, `model.invoke`, `tool.execute`, `kb.retrieve`.

    `on_end` receives the same attributes as `on_begin` plus `elapsed_ms`, and
    the exception if the wrapped block raised. Exceptions raised by the
    callbacks themselves are logged and dropped.
    """

    on_begin: BeginCallback | None = None
    on_end: EndCallback | None = None


def _fire(callback: Callable[..., None], name: str, *args: Any) -> None:
    try:
        callback(name, *args)
    except Exception as exc:
        logger.warning("instrumentation_hook_failed", span=name, error=str(exc))


@contextmanager
def span(
    hooks: InstrumentationHooks | None, name: str, **attrs: Any
) -> Iterator[dict[str, Any]]:
    """Wrap a block with hook calls; yields the mutable attribute dict."""

    if hooks is not None and hooks.on_begin is not None:
        _fire(hooks.on_begin, name, attrs)
    start = perf_counter()
    error: BaseException | None = None
    try:
        yield attrs
    except BaseException as exc:
        error = exc
        raise
    finally:
        if hooks is not None and hooks.on_end is not None:
            attrs["elapsed_ms"] = (perf_counter() - start) * 1000.0
            _fire(hooks.on_end, name, attrs, error)
