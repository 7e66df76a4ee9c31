"""
Rule: Detect jobs on self-hosted or unknown runners.

Self-hosted runners are usually persistent: a job that runs untrusted
code on one can leave a backdoor for every later job on the same host.
Only the vendor-managed, ephemeral runner families are trusted.
"""

import re

from pipeaudit.model import Pipeline
from pipeaudit.rules.engine import Finding, make_finding, register_rule
from pipeaudit.rules.helpers import has_expression, is_empty

RULE_ID = "self_hosted_runner"

HOSTED_RUNNER_PATTERN = re.compile(
    r"^("
    r"ubuntu-(18\.04|20\.04|22\.04|latest)"
    r"|macos-(11|12|13|latest)(-xl)?"
    r"|windows-(20\d\d|latest)"
    r"|(buildjet|warp|ubicloud|blacksmith|depot|namespace-profile)-[a-z0-9._-]+"
    r"|saas-(linux|macos|windows)-[a-z0-9._-]+"
    r")$",
    re.IGNORECASE,
)


def is_hosted_label(label: str) -> bool:
    return HOSTED_RUNNER_PATTERN.match(label.strip()) is not None


@register_rule(RULE_ID)
def check_self_hosted_runner(pipeline: Pipeline) -> list[Finding]:
    findings = []
    for job in pipeline.ordered_jobs():
        if is_empty(job.runner_labels):
            continue
        unknown = [
            label for label in job.runner_labels
            # Templated labels (e.g. ${{ matrix.os }}) are not statically known.
            if not has_expression(label) and not is_hosted_label(label)
        ]
        if not unknown:
            continue
        findings.append(make_finding(
            RULE_ID,
            f"Job '{job.name}' runs on a self-hosted or unknown runner",
            (
                f"Runner labels {job.runner_labels} do not all match a vendor-managed "
                f"runner family. Self-hosted runners can be persistent, so code from "
                f"one job may compromise the host for later jobs."
            ),
            pipeline,
            job=job,
            labels=",".join(job.runner_labels),
        ))
    return findings
