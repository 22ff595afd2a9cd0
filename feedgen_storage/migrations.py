"""
Schema migration runner.

Applies an ordered, named sequence of schema steps exactly once each.
Which steps ran is tracked in a ledger that lives in the backend itself
(a table for SQL engines, a container for Cosmos DB).

Rules:
- Steps run in name order; names already in the ledger are skipped.
- A step's ledger entry is written only after the step succeeded.
- A failing step raises MigrationError and stops the run. Nothing is
  retried here: a half-applied step needs operator attention on restart.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass

from .exceptions import MigrationError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MigrationStep:
    """One schema-evolution step."""

    name: str
    apply: Callable[[], Awaitable[None]]
    description: str = ""


class MigrationLedger(ABC):
    """Persisted record of applied migration names."""

    @abstractmethod
    async def ensure(self) -> None:
        """Create the ledger storage if it does not exist yet."""

    @abstractmethod
    async def applied(self) -> set[str]:
        """Names of the steps already applied."""

    @abstractmethod
    async def record(self, name: str) -> None:
        """Mark a step as applied."""


class MigrationRunner:
    """Brings a backend to the latest schema version."""

    def __init__(self, ledger: MigrationLedger, steps: Iterable[MigrationStep]):
        self.ledger = ledger
        self.steps = sorted(steps, key=lambda step: step.name)

        names = [step.name for step in self.steps]
        if len(names) != len(set(names)):
            raise ValueError(f"Duplicate migration names: {names}")

    async def pending(self) -> list[MigrationStep]:
        """Steps not yet recorded in the ledger, in the order they will run."""
        try:
            await self.ledger.ensure()
            applied = await self.ledger.applied()
        except Exception as e:
            raise MigrationError("ledger", e) from e
        return [step for step in self.steps if step.name not in applied]

    async def run(self) -> list[str]:
        """Apply pending steps.

        Returns:
            Names of the steps applied by this call (empty when up to date)
        """
        pending = await self.pending()
        if not pending:
            logger.info("Schema is up to date", extra={"steps": len(self.steps)})
            return []

        applied: list[str] = []
        for step in pending:
            logger.info(
                "Applying migration",
                extra={"step": step.name, "description": step.description},
            )
            try:
                await step.apply()
            except Exception as e:
                logger.error(
                    "Migration step failed",
                    extra={"step": step.name, "error": str(e)},
                )
                raise MigrationError(step.name, e) from e

            try:
                await self.ledger.record(step.name)
            except Exception as e:
                raise MigrationError(step.name, e) from e
            applied.append(step.name)

        logger.info("Applied migrations", extra={"applied": applied})
        return applied
