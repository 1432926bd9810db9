from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Protocol

logger = logging.getLogger("signalroom")

VARIANT_DEFAULT = "default"
VARIANT_DESTRUCTIVE = "destructive"


@dataclass(frozen=True)
class Notice:
    title: str
    description: str = ""
    variant: str = VARIANT_DEFAULT


class Notifier(Protocol):
    def notify(self, notice: Notice) -> None: ...


class LoggingNotifier:
    """Writes user-facing notices to the ``signalroom`` logger."""

    def notify(self, notice: Notice) -> None:
        level = logging.WARNING if notice.variant == VARIANT_DESTRUCTIVE else logging.INFO
        logger.log(level, "%s: %s", notice.title, notice.description)


class CollectingNotifier:
    """Keeps notices in memory; used by the simulator and in tests."""

    def __init__(self) -> None:
        self.notices: List[Notice] = []

    def notify(self, notice: Notice) -> None:
        self.notices.append(notice)

    def titles(self) -> List[str]:
        return [notice.title for notice in self.notices]
