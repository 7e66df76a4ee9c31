"""
Finding aggregator: merges the findings of one repository's pipelines.

Deduplicates findings reported more than once (e.g. a reusable workflow
inlined by two callers and also scanned on its own), assigns severity
from a static table, and orders the result for reproducible reports.
"""

import dataclasses
import logging
from typing import TYPE_CHECKING, Iterable

from pipeaudit.rules.engine import RULE_EVALUATION_ERROR, Finding, Severity

if TYPE_CHECKING:
    from pipeaudit.config import Config

logger = logging.getLogger(__name__)

RULE_SEVERITY: dict[str, Severity] = {
    "untrusted_checkout_exec": Severity.CRITICAL,
    "injection": Severity.CRITICAL,
    "default_permissions_on_risky_events": Severity.HIGH,
    "job_all_secrets": Severity.HIGH,
    "self_hosted_runner": Severity.HIGH,
    "unpinned_action": Severity.MEDIUM,
    "debug_enabled": Severity.LOW,
    RULE_EVALUATION_ERROR: Severity.NOTE,
}

DEFAULT_SEVERITY = Severity.LOW


def severity_for(rule_id: str) -> Severity:
    return RULE_SEVERITY.get(rule_id, DEFAULT_SEVERITY)


def dedup_key(finding: Finding) -> tuple:
    return (finding.rule_id, finding.file_path, finding.job, finding.step, finding.evidence)


def sort_key(finding: Finding) -> tuple:
    return (finding.file_path,) + finding.sort_key()


def aggregate(findings_per_pipeline: Iterable[Iterable[Finding]]) -> list[Finding]:
    """
    Merge per-pipeline finding lists into one ordered, deduplicated list.

    The first occurrence of a duplicate wins; evidence is never changed,
    only the severity annotation.
    """
    seen: dict[tuple, Finding] = {}
    total = 0
    for findings in findings_per_pipeline:
        for finding in findings:
            total += 1
            key = dedup_key(finding)
            if key not in seen:
                seen[key] = dataclasses.replace(finding, severity=severity_for(finding.rule_id))

    result = sorted(seen.values(), key=sort_key)
    logger.debug("Aggregated %d finding(s) into %d", total, len(result))
    return result


def apply_config(findings: list[Finding], config: "Config") -> list[Finding]:
    """Drop ignored rules and findings under the minimum severity.

    Diagnostic findings (rule_evaluation_error) are always kept.
    """
    min_rank = Severity(config.severity).rank
    kept = [
        f for f in findings
        if f.rule_id == RULE_EVALUATION_ERROR
        or (f.rule_id not in config.ignore_rules and f.severity.rank >= min_rank)
    ]
    if len(kept) != len(findings):
        logger.info("Filtered %d finding(s) via config", len(findings) - len(kept))
    return kept
