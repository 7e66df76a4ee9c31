from .engine import (
    RULE_EVALUATION_ERROR,
    Finding,
    Rule,
    Severity,
    evaluate,
    evaluate_all,
    register_rule,
    registered_rules,
)

__all__ = [
    "RULE_EVALUATION_ERROR",
    "Finding",
    "Rule",
    "Severity",
    "evaluate",
    "evaluate_all",
    "register_rule",
    "registered_rules",
]

# Import all rule modules so they register themselves via @register_rule
from . import unpinned_actions
from . import self_hosted_runner
from . import untrusted_checkout
from . import script_injection
from . import secret_handling
from . import debug_enabled
from . import permissions
