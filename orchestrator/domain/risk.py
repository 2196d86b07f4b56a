from __future__ import annotations

from collections.abc import Iterable

from orchestrator.domain.errors import UnknownRiskIndicatorError
from orchestrator.domain.models import RiskIndicator, RiskVerdict

# Higher rank wins regardless of order.
_INDICATOR_RANK: dict[str, int] = {
    RiskVerdict.GREEN.value: 0,
    RiskVerdict.AMBER.value: 1,
    RiskVerdict.RED.value: 2,
}
_RANK_TO_VERDICT: dict[int, RiskVerdict] = {
    0: RiskVerdict.GREEN,
    1: RiskVerdict.AMBER,
    2: RiskVerdict.RED,
}


def aggregate(indicators: Iterable[RiskIndicator]) -> RiskVerdict:
    """Combine per-source indicators into one verdict.

    Works on the indicator set supplied by the remote service only. An empty set
    yields NO_VERDICT, which callers must not read as green.
    """
    worst: int | None = None
    for item in indicators:
        rank = _INDICATOR_RANK.get(item.indicator)
        if rank is None:
            raise UnknownRiskIndicatorError(
                f"unsupported risk indicator '{item.indicator}' from source '{item.source}'"
            )
        if worst is None or rank > worst:
            worst = rank

    if worst is None:
        return RiskVerdict.NO_VERDICT
    return _RANK_TO_VERDICT[worst]
