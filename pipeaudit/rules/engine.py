"""
Rule engine: defines the Finding model and runs rules against a pipeline.
"""

import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Iterable, Optional

from pipeaudit.model import Job, Pipeline, Step

logger = logging.getLogger(__name__)

RULE_EVALUATION_ERROR = "rule_evaluation_error"


class Severity(Enum):
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    NOTE = "note"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]


_SEVERITY_RANK = {
    Severity.NOTE: 0,
    Severity.LOW: 1,
    Severity.MEDIUM: 2,
    Severity.HIGH: 3,
    Severity.CRITICAL: 4,
}


@dataclass(frozen=True)
class Finding:
    """A single security finding produced by a rule."""
    rule_id: str                   # e.g. "unpinned_action"
    title: str                     # short summary
    message: str                   # what was found
    file_path: str                 # file the offending code lives in
    job: str = ""                  # job name (empty if pipeline-level)
    job_index: Optional[int] = None
    step: Optional[int] = None     # step position (None if job/pipeline-level)
    step_name: str = ""
    evidence: tuple[tuple[str, str], ...] = ()
    severity: Severity = Severity.LOW
    line_number: Optional[int] = None

    def details(self) -> dict[str, str]:
        return dict(self.evidence)

    def sort_key(self) -> tuple:
        return (
            -1 if self.job_index is None else self.job_index,
            -1 if self.step is None else self.step,
            self.rule_id,
            self.evidence,
        )


def make_finding(
    rule_id: str,
    title: str,
    message: str,
    pipeline: Pipeline,
    job: Optional[Job] = None,
    step: Optional[Step] = None,
    **evidence: str,
) -> Finding:
    """Build a Finding located at a pipeline, job, or step."""
    file_path = pipeline.file_path
    if job is not None and job.origin_path:
        file_path = job.origin_path
    step_name = ""
    if step is not None:
        step_name = step.name or getattr(step, "uses", "") or f"step {step.position}"
    line_number = None
    if step is not None:
        line_number = step.line_number
    elif job is not None:
        line_number = job.line_number
    return Finding(
        rule_id=rule_id,
        title=title,
        message=message,
        file_path=file_path,
        job=(job.origin_name or job.name) if job is not None else "",
        job_index=job.index if job is not None else None,
        step=step.position if step is not None else None,
        step_name=step_name,
        evidence=tuple(sorted((k, str(v)) for k, v in evidence.items())),
        line_number=line_number,
    )


# Type alias: a rule check is a function that takes a Pipeline and returns findings
RuleFunc = Callable[[Pipeline], list[Finding]]


@dataclass(frozen=True)
class Rule:
    rule_id: str
    check: RuleFunc


# Registry of all rules, in registration order
_rules: dict[str, Rule] = {}


def register_rule(rule_id: str) -> Callable[[RuleFunc], RuleFunc]:
    """Decorator to register a rule function under a stable id."""
    def decorator(func: RuleFunc) -> RuleFunc:
        _rules[rule_id] = Rule(rule_id=rule_id, check=func)
        logger.debug("Registered rule: %s (%s)", rule_id, func.__name__)
        return func
    return decorator


def registered_rules() -> list[Rule]:
    return list(_rules.values())


def evaluate(pipeline: Pipeline, rules: Optional[Iterable[Rule]] = None) -> list[Finding]:
    """
    Run rules against one pipeline.

    A rule that raises does not stop the others; it is reported as a
    rule_evaluation_error finding. The result is sorted by job index,
    step position, then rule id.
    """
    rules = registered_rules() if rules is None else list(rules)
    logger.info("Running %d rule(s) against %s", len(rules), pipeline.file_path)
    t0 = time.monotonic()
    findings = []
    for rule in rules:
        rule_t0 = time.monotonic()
        try:
            rule_findings = rule.check(pipeline)
        except Exception as e:  # noqa: BLE001  # per-rule isolation boundary
            logger.warning("Rule '%s' failed on %s: %s", rule.rule_id, pipeline.file_path, e)
            rule_findings = [make_finding(
                RULE_EVALUATION_ERROR,
                f"Rule '{rule.rule_id}' could not be evaluated",
                f"{type(e).__name__}: {e}",
                pipeline,
                rule=rule.rule_id,
            )]
        rule_ms = (time.monotonic() - rule_t0) * 1000
        findings.extend(rule_findings)
        logger.debug(
            "Rule '%s': %d finding(s) in %.1fms",
            rule.rule_id, len(rule_findings), rule_ms,
        )
    findings.sort(key=Finding.sort_key)
    total_ms = (time.monotonic() - t0) * 1000
    logger.info(
        "Completed: %d finding(s) for %s in %.1fms",
        len(findings), pipeline.file_path, total_ms,
    )
    return findings


def evaluate_all(pipelines: Iterable[Pipeline], rules: Optional[Iterable[Rule]] = None) -> list[list[Finding]]:
    """Evaluate each pipeline of a repository; one finding list per pipeline."""
    rules = registered_rules() if rules is None else list(rules)
    return [evaluate(p, rules) for p in pipelines]
