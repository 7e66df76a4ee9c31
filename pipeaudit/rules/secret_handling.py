"""
Rule: Detect jobs that expose every repository secret at once.

${{ toJSON(secrets) }} serializes all secrets available to the workflow
into one value. Any step that can read it (or any action it is passed to)
gets every credential, not just the ones the job needs.
"""

import re
from typing import Any, Iterable

from pipeaudit.model import Pipeline, Platform, UsesStep
from pipeaudit.rules.engine import Finding, make_finding, register_rule

RULE_ID = "job_all_secrets"

ALL_SECRETS_PATTERN = re.compile(r"\$\{\{\s*tojson\(\s*secrets\s*\)\s*\}\}", re.IGNORECASE)


def _mentions_all_secrets(values: Iterable[Any]) -> bool:
    return any(isinstance(v, str) and ALL_SECRETS_PATTERN.search(v) for v in values)


@register_rule(RULE_ID)
def check_secret_handling(pipeline: Pipeline) -> list[Finding]:
    if pipeline.platform != Platform.GITHUB:
        return []

    findings = []
    for job in pipeline.ordered_jobs():
        values = list(job.env.values())
        for step in job.steps:
            values.extend(step.env.values())
            if isinstance(step, UsesStep):
                values.extend(step.with_args.values())
            else:
                values.append(step.script)

        if _mentions_all_secrets(values):
            findings.append(make_finding(
                RULE_ID,
                f"Job '{job.name}' exposes all secrets",
                (
                    "The job uses ${{ toJSON(secrets) }}, which hands every secret of "
                    "the repository to its steps. Reference only the secrets it needs."
                ),
                pipeline,
                job=job,
            ))
    return findings
