"""
Rule: Detect unpinned actions, container images and GitLab includes.

Actions referenced by tag (e.g. @v4) or branch (e.g. @main) can be
silently replaced by their owner. Pinning to a full commit SHA (or an
image to its sha256 digest) ensures you always run the code you reviewed.
"""

from typing import Optional

from pipeaudit import purl
from pipeaudit.model import Job, Pipeline, Step, UsesStep
from pipeaudit.rules.engine import Finding, make_finding, register_rule

RULE_ID = "unpinned_action"


def unpinned_github_action(ref: purl.PackageRef) -> bool:
    return not purl.is_commit_sha(ref.ref)


def unpinned_docker(ref: purl.PackageRef) -> bool:
    return not purl.is_docker_digest(ref.ref)


def unpinned_gitlab_include(ref: purl.PackageRef) -> bool:
    return not purl.is_commit_sha(ref.ref)


_PREDICATES = {
    purl.GITHUB_ACTIONS: unpinned_github_action,
    purl.DOCKER: unpinned_docker,
    purl.GITLAB: unpinned_gitlab_include,
}


def is_unpinned(ref: purl.PackageRef) -> bool:
    """Unpinned under the rule for the reference's scheme; templated refs never are."""
    if ref.is_templated:
        return False
    predicate = _PREDICATES.get(ref.scheme)
    return predicate is not None and predicate(ref)


def _finding(pipeline: Pipeline, ref: purl.PackageRef, job: Optional[Job] = None, step: Optional[Step] = None) -> Finding:
    kind = "image" if ref.scheme == purl.DOCKER else "reference"
    return make_finding(
        RULE_ID,
        f"Unpinned {kind}",
        (
            f"'{ref.purl}' is referenced by tag/branch '{ref.ref or '(none)'}', not by "
            f"an immutable digest. A compromised or force-pushed ref could inject "
            f"malicious code into this pipeline."
        ),
        pipeline,
        job=job,
        step=step,
        purl=ref.purl,
    )


@register_rule(RULE_ID)
def check_unpinned_actions(pipeline: Pipeline) -> list[Finding]:
    findings = []
    for ref in pipeline.includes:
        if is_unpinned(ref):
            findings.append(_finding(pipeline, ref))

    for job in pipeline.ordered_jobs():
        job_refs = list(job.images)
        if job.package is not None:
            job_refs.append(job.package)
        for ref in job_refs:
            if is_unpinned(ref):
                findings.append(_finding(pipeline, ref, job=job))

        for step in job.steps:
            if isinstance(step, UsesStep) and step.package and is_unpinned(step.package):
                findings.append(_finding(pipeline, step.package, job=job, step=step))
    return findings
