from __future__ import annotations

import random
from typing import Iterable, Iterator

from .config import Scenario
from .errors import ConfigurationError


class ScenarioCatalog:
    """Immutable weighted list of scenarios with an injectable random source."""

    def __init__(
        self,
        scenarios: Iterable[Scenario],
        seed: int | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self._scenarios: tuple[Scenario, ...] = tuple(scenarios)
        if not self._scenarios:
            raise ConfigurationError("scenario catalog must not be empty")
        for scenario in self._scenarios:
            if scenario.weight <= 0:
                raise ConfigurationError(
                    f"scenario {scenario.name!r} weight must be > 0, got {scenario.weight}"
                )
        self._total_weight = sum(scenario.weight for scenario in self._scenarios)
        self._rng = rng if rng is not None else random.Random(seed)

    @property
    def total_weight(self) -> int:
        return self._total_weight

    @property
    def scenarios(self) -> tuple[Scenario, ...]:
        return self._scenarios

    def __len__(self) -> int:
        return len(self._scenarios)

    def __iter__(self) -> Iterator[Scenario]:
        return iter(self._scenarios)

    def select(self) -> Scenario:
        remaining = self._rng.random() * self._total_weight
        for scenario in self._scenarios:
            remaining -= scenario.weight
            if remaining <= 0:
                return scenario
        # Float errors fallback
        return self._scenarios[0]

    def expected_shares(self) -> dict[str, float]:
        return {
            scenario.name: scenario.weight / self._total_weight
            for scenario in self._scenarios
        }
