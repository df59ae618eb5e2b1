"""
Assignment Rule Repository

Resolves which AssignmentRule is effective for a stage and category at a
point in time: active, inside its effective window, lowest priority number
first, a category-specific rule ahead of a catch-all at equal priority.
"""
from datetime import datetime
from typing import List, Optional

from sqlalchemy import or_
from sqlalchemy.orm import Session

from ...models.db_models import AssignmentRuleDB, PositionCategory, StageRole


class AssignmentRuleRepository:

    def __init__(self, db_session: Session):
        self.db = db_session

    def _active_query(self, now: datetime):
        return self.db.query(AssignmentRuleDB).filter(
            AssignmentRuleDB.is_active.is_(True),
            or_(AssignmentRuleDB.effective_from.is_(None), AssignmentRuleDB.effective_from <= now),
            or_(AssignmentRuleDB.effective_to.is_(None), AssignmentRuleDB.effective_to >= now),
        )

    @staticmethod
    def _order(rules: List[AssignmentRuleDB]) -> List[AssignmentRuleDB]:
        return sorted(rules, key=lambda r: (r.priority, r.category is None, r.id))

    def effective_rules(
        self,
        stage: StageRole,
        category: Optional[PositionCategory],
        now: datetime,
    ) -> List[AssignmentRuleDB]:
        """All rules applicable to (stage, category) at `now`, best first."""
        rules = (
            self._active_query(now)
            .filter(
                AssignmentRuleDB.stage == stage,
                or_(AssignmentRuleDB.category.is_(None), AssignmentRuleDB.category == category),
            )
            .all()
        )
        return self._order(rules)

    def effective_rule(
        self,
        stage: StageRole,
        category: Optional[PositionCategory],
        now: datetime,
    ) -> Optional[AssignmentRuleDB]:
        rules = self.effective_rules(stage, category, now)
        return rules[0] if rules else None

    def escalation_rule(
        self,
        stage: StageRole,
        category: Optional[PositionCategory],
        now: datetime,
    ) -> Optional[AssignmentRuleDB]:
        """Best applicable rule that carries an escalation role and dwell time."""
        for rule in self.effective_rules(stage, category, now):
            if rule.escalation_role is not None and rule.escalation_time_hours:
                return rule
        return None

    def escalation_rules(self, now: datetime) -> List[AssignmentRuleDB]:
        """Every effective rule with escalation configured."""
        rules = (
            self._active_query(now)
            .filter(
                AssignmentRuleDB.escalation_role.isnot(None),
                AssignmentRuleDB.escalation_time_hours.isnot(None),
            )
            .all()
        )
        return self._order(rules)
