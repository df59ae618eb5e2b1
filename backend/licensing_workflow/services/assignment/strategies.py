"""
Reviewer Selection Strategies

Pure functions of (officers in stable order, workload snapshot, cursor).
Same inputs always select the same officer; ties go to the first officer in
the given order.
"""
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Sequence

from ...models.db_models import AssignmentStrategy, OfficerDB

PRIORITY_WORKLOAD_BASE = 100
PRIORITY_WORKLOAD_WEIGHT = 10


@dataclass
class Selection:
    """Officer chosen by a strategy plus the figures that chose it."""
    officer: OfficerDB
    strategy: AssignmentStrategy
    workload: int
    score: Optional[float] = None


def select_round_robin(
    officers: Sequence[OfficerDB],
    workloads: Dict[str, int],
    last_officer_id: Optional[str] = None,
) -> Selection:
    """
    Officer after the cursor, wrapping at the end.

    An unset cursor, or one pointing at an officer no longer in the list,
    restarts at the first officer.
    """
    ids = [o.id for o in officers]
    if last_officer_id in ids:
        index = (ids.index(last_officer_id) + 1) % len(officers)
    else:
        index = 0
    chosen = officers[index]
    return Selection(chosen, AssignmentStrategy.ROUND_ROBIN, workloads.get(chosen.id, 0))


def select_workload_based(
    officers: Sequence[OfficerDB],
    workloads: Dict[str, int],
    last_officer_id: Optional[str] = None,
) -> Selection:
    """Least open cases."""
    chosen = min(officers, key=lambda o: workloads.get(o.id, 0))
    return Selection(chosen, AssignmentStrategy.WORKLOAD_BASED, workloads.get(chosen.id, 0))


def priority_score(workload: int, experience_months: Optional[int]) -> float:
    return float((PRIORITY_WORKLOAD_BASE - workload) * PRIORITY_WORKLOAD_WEIGHT + (experience_months or 0))


def select_priority_based(
    officers: Sequence[OfficerDB],
    workloads: Dict[str, int],
    last_officer_id: Optional[str] = None,
) -> Selection:
    """Highest (100 - workload) * 10 + experience months."""
    scored = [(o, priority_score(workloads.get(o.id, 0), o.experience_months)) for o in officers]
    chosen, score = max(scored, key=lambda pair: pair[1])
    return Selection(chosen, AssignmentStrategy.PRIORITY_BASED, workloads.get(chosen.id, 0), score)


def select_skill_based(
    officers: Sequence[OfficerDB],
    workloads: Dict[str, int],
    last_officer_id: Optional[str] = None,
) -> Selection:
    """
    Placeholder: officers carry no skill metadata, so this is workload based
    selection recorded under SKILL_BASED.
    """
    selection = select_workload_based(officers, workloads)
    selection.strategy = AssignmentStrategy.SKILL_BASED
    return selection


STRATEGIES: Dict[AssignmentStrategy, Callable[..., Selection]] = {
    AssignmentStrategy.ROUND_ROBIN: select_round_robin,
    AssignmentStrategy.WORKLOAD_BASED: select_workload_based,
    AssignmentStrategy.PRIORITY_BASED: select_priority_based,
    AssignmentStrategy.SKILL_BASED: select_skill_based,
}


def select_officer(
    strategy: AssignmentStrategy,
    officers: List[OfficerDB],
    workloads: Dict[str, int],
    last_officer_id: Optional[str] = None,
) -> Optional[Selection]:
    """Apply `strategy`; None when there is nobody to choose from."""
    if not officers:
        return None
    selector = STRATEGIES.get(strategy)
    if selector is None:
        raise ValueError(f"Strategy {strategy} does not select automatically")
    return selector(officers, workloads, last_officer_id)
