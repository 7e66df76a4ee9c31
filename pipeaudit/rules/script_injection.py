"""
Rule: Detect script injection via user-controlled contexts.

When values like github.event.pull_request.title are interpolated with
${{ }} directly into a 'run:' block (or an actions/github-script body),
an attacker can craft a payload that executes as code. The GitLab
equivalent is a predefined merge request or commit variable expanded
straight into a job script.
"""

import re

from pipeaudit.model import Pipeline, Platform, RunStep, UsesStep
from pipeaudit.rules.engine import Finding, make_finding, register_rule
from pipeaudit.rules.helpers import expressions_in

RULE_ID = "injection"

# GitHub contexts that contain user-controlled input
DANGEROUS_CONTEXTS = [
    "github.event.issue.title",
    "github.event.issue.body",
    "github.event.pull_request.title",
    "github.event.pull_request.body",
    "github.event.pull_request.head.ref",
    "github.event.pull_request.head.label",
    "github.event.pull_request.head.repo.default_branch",
    "github.event.comment.body",
    "github.event.review.body",
    "github.event.review_comment.body",
    "github.event.discussion.title",
    "github.event.discussion.body",
    "github.event.pages.*.page_name",
    "github.event.commits.*.message",
    "github.event.commits.*.author.email",
    "github.event.commits.*.author.name",
    "github.event.head_commit.message",
    "github.event.head_commit.author.name",
    "github.event.head_commit.author.email",
    "github.event.workflow_run.head_branch",
    "github.event.workflow_run.head_commit.message",
    "github.head_ref",
]

# GitLab predefined variables an external contributor controls
DANGEROUS_VARIABLES = [
    "CI_MERGE_REQUEST_TITLE",
    "CI_MERGE_REQUEST_DESCRIPTION",
    "CI_MERGE_REQUEST_SOURCE_BRANCH_NAME",
    "CI_COMMIT_MESSAGE",
    "CI_COMMIT_TITLE",
    "CI_COMMIT_DESCRIPTION",
    "CI_COMMIT_BRANCH",
    "CI_COMMIT_REF_NAME",
    "CI_COMMIT_AUTHOR",
]

SCRIPT_ACTIONS = frozenset({"actions/github-script"})


def _context_pattern(context: str) -> re.Pattern:
    # "*" stands for one property or index: commits.0.message, commits[0].message
    wildcard = r"(?:\.[^.\s\[]+|\[[^\]]*\])"
    return re.compile(r"\b" + re.escape(context).replace(r"\.\*", wildcard) + r"\b")


_CONTEXT_PATTERNS = [(c, _context_pattern(c)) for c in DANGEROUS_CONTEXTS]


def untrusted_contexts(text: str, platform: Platform) -> list[str]:
    """Names of untrusted contexts interpolated in the text, sorted."""
    found = set()
    for expr in expressions_in(text, platform):
        if platform == Platform.GITLAB:
            name = expr.strip("${}%")
            if name in DANGEROUS_VARIABLES:
                found.add(name)
            continue
        for context, pattern in _CONTEXT_PATTERNS:
            if pattern.search(expr):
                found.add(context)
    return sorted(found)


@register_rule(RULE_ID)
def check_script_injection(pipeline: Pipeline) -> list[Finding]:
    findings = []
    for job in pipeline.ordered_jobs():
        for step in job.steps:
            if isinstance(step, RunStep):
                body = step.script
            elif isinstance(step, UsesStep) and step.package and step.package.name in SCRIPT_ACTIONS:
                body = step.with_args.get("script")
            else:
                continue
            if not isinstance(body, str):
                continue

            contexts = untrusted_contexts(body, pipeline.platform)
            if not contexts:
                continue
            findings.append(make_finding(
                RULE_ID,
                "Potential script injection",
                (
                    f"The script interpolates the user-controlled value(s) "
                    f"{', '.join(contexts)}. An attacker could craft a value that "
                    f"executes arbitrary commands. Pass it through an environment "
                    f"variable and quote it instead."
                ),
                pipeline,
                job=job,
                step=step,
                contexts=",".join(contexts),
            ))
    return findings
