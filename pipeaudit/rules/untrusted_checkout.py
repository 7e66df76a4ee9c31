"""
Rule: Detect execution of code checked out from an untrusted pull request.

A pipeline triggered by a pull request event that checks out the PR head
(actions/checkout with a head ref, 'gh pr checkout', 'git fetch ... pull/')
and then keeps running steps in the same job may execute attacker code:
build scripts, package manager hooks, and local actions all come from the
fork. One finding is reported for every step after the first such checkout.
"""

import re
from typing import Optional

from pipeaudit.model import Job, Pipeline, RunStep, Step, UsesStep
from pipeaudit.rules.engine import Finding, make_finding, register_rule
from pipeaudit.rules.helpers import UNTRUSTED_EVENTS, has_any_event, is_empty

RULE_ID = "untrusted_checkout_exec"

CHECKOUT_ACTIONS = frozenset({"actions/checkout"})

# Contexts that resolve to the pull request head
PR_HEAD_REF_PATTERN = re.compile(
    r"github\.event\.pull_request\.head\."
    r"|github\.head_ref"
    r"|github\.event\.workflow_run\.head_(sha|branch)"
    r"|refs/pull/"
    r"|CI_MERGE_REQUEST_SOURCE_BRANCH_(NAME|SHA)"
)

PR_CHECKOUT_COMMAND_PATTERNS = [
    re.compile(r"\b(gh|hub)\s+pr\s+checkout\b"),
    re.compile(r"\bgit\s+fetch\b.*\bpull/"),
    re.compile(r"\bgit\s+(checkout|switch|reset\s+--hard)\b.*(" + PR_HEAD_REF_PATTERN.pattern + ")"),
]


def is_pr_checkout(step: Step) -> bool:
    """True if the step checks out code at a ref the pull request controls."""
    if isinstance(step, UsesStep):
        if step.package is None or step.package.name not in CHECKOUT_ACTIONS:
            return False
        ref = step.with_args.get("ref")
        return isinstance(ref, str) and PR_HEAD_REF_PATTERN.search(ref) is not None
    if isinstance(step, RunStep):
        return any(p.search(step.script) for p in PR_CHECKOUT_COMMAND_PATTERNS)
    return False


def first_pr_checkout(job: Job) -> Optional[Step]:
    for step in sorted(job.steps, key=lambda s: s.position):
        if is_pr_checkout(step):
            return step
    return None


@register_rule(RULE_ID)
def check_untrusted_checkout_exec(pipeline: Pipeline) -> list[Finding]:
    if not has_any_event(pipeline, UNTRUSTED_EVENTS):
        return []

    findings = []
    for job in pipeline.ordered_jobs():
        if is_empty(job.steps):
            continue
        checkout = first_pr_checkout(job)
        if checkout is None:
            continue
        for step in job.steps_after(checkout.position):
            findings.append(make_finding(
                RULE_ID,
                "Execution after checkout of untrusted pull request code",
                (
                    f"Step {checkout.position} of job '{job.name}' checks out code controlled "
                    f"by the pull request, and step {step.position} runs afterwards in the same "
                    f"job. It may execute attacker-controlled code from the fork."
                ),
                pipeline,
                job=job,
                step=step,
                checkout_step=str(checkout.position),
            ))
    return findings
