import logging
from typing import Callable, Iterable, List, Optional, Tuple

from config.risk_config import RiskConfig
from .rules import NO_ACTION, SKIP, Rule, RuleContext, RuleResult, standard_rules


logger = logging.getLogger(__name__)


class RuleEngine:
    """Ordered, first-exit-wins evaluation of exit rules.

    Rules are kept sorted by ascending priority (ties keep registration
    order). Disabled rules never enter the list.
    """

    def __init__(self, rules: Iterable[Rule] = (), on_rule_error: Optional[Callable[[Rule, Exception], None]] = None):
        self._rules: List[Tuple[int, int, Rule]] = []
        self._seq = 0
        self.on_rule_error = on_rule_error
        for rule in rules:
            self.add_rule(rule)

    @classmethod
    def from_config(cls, config: RiskConfig, **kwargs) -> 'RuleEngine':
        return cls(standard_rules(config), **kwargs)

    @property
    def rules(self) -> Tuple[Rule, ...]:
        return tuple(rule for _, _, rule in self._rules)

    def add_rule(self, rule: Rule) -> bool:
        if not getattr(rule, 'enabled', True):
            logger.info("Rule %s disabled; not registered", rule.name)
            return False
        self._rules.append((int(rule.priority), self._seq, rule))
        self._seq += 1
        self._rules.sort(key=lambda item: (item[0], item[1]))
        return True

    def remove_rule(self, name: str) -> bool:
        before = len(self._rules)
        self._rules = [item for item in self._rules if item[2].name != name]
        return len(self._rules) != before

    def find_rule(self, name: str) -> Optional[Rule]:
        for _, _, rule in self._rules:
            if rule.name == name:
                return rule
        return None

    def evaluate(self, context: RuleContext) -> RuleResult:
        if not context.active:
            return SKIP

        saw_no_action = False
        for _, _, rule in self._rules:
            try:
                result = rule.evaluate(context)
            except Exception as e:
                logger.error(
                    "Rule %s failed for position %s: %s", rule.name, context.position_id, e, exc_info=True
                )
                if self.on_rule_error is not None:
                    self.on_rule_error(rule, e)
                continue
            if result.is_exit:
                logger.info("Rule %s triggered exit for %s: %s", rule.name, context.position_id, result.reason)
                return result
            if result == NO_ACTION:
                saw_no_action = True
        return NO_ACTION if saw_no_action else SKIP
