"""
Normalizer for GitHub Actions workflows and action metadata files.

Reads a workflow (.github/workflows/*.yml) or an action.yml and turns it
into the canonical Pipeline model. Expressions (${{ ... }}) are kept
verbatim; nothing is evaluated.
"""

import logging
from typing import Any, Optional, Union

import yaml

from pipeaudit import purl
from pipeaudit.model import (
    ErrorKind,
    Job,
    NormalizationError,
    Pipeline,
    Platform,
    RunStep,
    Step,
    Trigger,
    UsesStep,
)
from pipeaudit.parser.common import (
    MAX_RESOLUTION_DEPTH,
    Resolver,
    as_str_list,
    record,
    validate_needs,
)
from pipeaudit.parser.yaml_loader import LINE_KEY, clean, line_of, load_yaml_documents

logger = logging.getLogger(__name__)

EVENTS = frozenset({
    "branch_protection_rule", "check_run", "check_suite", "create", "delete",
    "deployment", "deployment_status", "discussion", "discussion_comment",
    "fork", "gollum", "issue_comment", "issues", "label", "merge_group",
    "milestone", "page_build", "project", "project_card", "project_column",
    "public", "pull_request", "pull_request_comment", "pull_request_review",
    "pull_request_review_comment", "pull_request_target", "push",
    "registry_package", "release", "repository_dispatch", "schedule",
    "status", "watch", "workflow_call", "workflow_dispatch", "workflow_run",
})

WORKFLOW_KEYS = frozenset({
    "name", "run-name", "on", "permissions", "env", "defaults", "concurrency", "jobs",
})

JOB_KEYS = frozenset({
    "name", "permissions", "needs", "if", "runs-on", "environment", "concurrency",
    "outputs", "env", "defaults", "steps", "timeout-minutes", "strategy",
    "continue-on-error", "container", "services", "uses", "with", "secrets",
    "snapshot",
})

STEP_KEYS = frozenset({
    "id", "if", "name", "uses", "run", "shell", "with", "env",
    "continue-on-error", "timeout-minutes", "working-directory",
})


def is_action_metadata(path: str) -> bool:
    return path.rsplit("/", 1)[-1] in ("action.yml", "action.yaml")


def normalize_github(
    path: str,
    content: bytes,
    resolver: Optional[Resolver] = None,
) -> tuple[Pipeline, list[NormalizationError]]:
    """
    Normalize one GitHub Actions document.

    Args:
        path: Repository-relative path of the document.
        content: Raw file bytes.
        resolver: Optional lookup for local reusable workflows.

    Returns:
        The best-effort Pipeline and every recoverable error met on the way.
    """
    errors: list[NormalizationError] = []
    pipeline = Pipeline(platform=Platform.GITHUB, file_path=path)

    raw = _load_mapping(path, content, errors)
    if raw is None:
        return pipeline, errors

    if is_action_metadata(path):
        _normalize_action_metadata(pipeline, raw, errors)
    else:
        _normalize_workflow(pipeline, raw, errors, resolver, stack=(path,))

    logger.debug(
        "Normalized '%s': %d job(s), triggers=%s, %d error(s)",
        path, len(pipeline.jobs), pipeline.events, len(errors),
    )
    return pipeline, errors


def _load_mapping(path: str, content: bytes, errors: list[NormalizationError]) -> Optional[dict[Any, Any]]:
    try:
        docs = load_yaml_documents(content)
    except yaml.YAMLError as e:
        record(errors, ErrorKind.UNPARSABLE_DOCUMENT, path, f"invalid YAML: {e}")
        return None

    raw = docs[0] if docs else None
    if not isinstance(raw, dict):
        record(errors, ErrorKind.UNPARSABLE_DOCUMENT, path, "document is not a YAML mapping")
        return None
    return raw


def _normalize_workflow(
    pipeline: Pipeline,
    raw: dict[Any, Any],
    errors: list[NormalizationError],
    resolver: Optional[Resolver],
    stack: tuple[str, ...],
) -> None:
    path = pipeline.file_path
    for key in raw:
        # PyYAML reads the bare key 'on' as boolean True.
        if key is True or key == LINE_KEY or key in WORKFLOW_KEYS:
            continue
        record(errors, ErrorKind.UNKNOWN_FIELD, path, f"unknown workflow key '{key}'", str(key))

    pipeline.name = raw.get("name")
    pipeline.triggers = _parse_triggers(raw.get("on", raw.get(True)), path, errors)
    pipeline.permissions = _parse_permissions(raw.get("permissions"), path, errors, "permissions")
    pipeline.env = _parse_env(raw.get("env"))

    jobs_raw = raw.get("jobs")
    if jobs_raw is None:
        return
    if not isinstance(jobs_raw, dict):
        record(errors, ErrorKind.UNKNOWN_FIELD, path, "'jobs' is not a mapping", "jobs")
        return

    for job_id, job_raw in clean(jobs_raw).items():
        job_id = str(job_id)
        if not isinstance(job_raw, dict):
            record(errors, ErrorKind.UNKNOWN_FIELD, path, f"job '{job_id}' is not a mapping", f"jobs.{job_id}")
            continue
        job = _parse_job(job_id, job_raw, len(pipeline.jobs), path, errors)
        pipeline.jobs[job.name] = job
        if job.uses and job.uses.startswith("./"):
            _inline_reusable_workflow(pipeline, job, errors, resolver, stack)

    validate_needs(pipeline.jobs, path, errors)


def _inline_reusable_workflow(
    pipeline: Pipeline,
    caller: Job,
    errors: list[NormalizationError],
    resolver: Optional[Resolver],
    stack: tuple[str, ...],
) -> None:
    """Append the jobs of a local reusable workflow under '<caller>/<job>'."""
    target = caller.uses[2:].split("@", 1)[0]
    location = f"jobs.{caller.name}.uses"

    if target in stack or len(stack) >= MAX_RESOLUTION_DEPTH:
        record(
            errors, ErrorKind.REFERENCE_RESOLUTION_FAILURE, pipeline.file_path,
            f"reusable workflow '{target}' is recursive or nested too deeply", location,
        )
        return

    document = resolver(target) if resolver else None
    if document is None:
        record(
            errors, ErrorKind.REFERENCE_RESOLUTION_FAILURE, pipeline.file_path,
            f"reusable workflow '{target}' not found", location,
        )
        return

    callee = Pipeline(platform=Platform.GITHUB, file_path=target)
    raw = _load_mapping(target, document.content, errors)
    if raw is None:
        return
    _normalize_workflow(callee, raw, errors, resolver, stack + (target,))

    logger.debug("Inlining %d job(s) from %s into %s", len(callee.jobs), target, caller.name)
    for callee_job in callee.ordered_jobs():
        name = f"{caller.name}/{callee_job.name}"
        callee_job.name = name
        callee_job.index = len(pipeline.jobs)
        callee_job.needs = [f"{caller.name}/{dep}" for dep in callee_job.needs]
        if callee_job.permissions is None:
            callee_job.permissions = callee.permissions
        pipeline.jobs[name] = callee_job


def _normalize_action_metadata(pipeline: Pipeline, raw: dict[Any, Any], errors: list[NormalizationError]) -> None:
    """Composite actions become one job; docker actions one uses-step."""
    path = pipeline.file_path
    pipeline.name = raw.get("name")
    runs = raw.get("runs")
    if not isinstance(runs, dict):
        record(errors, ErrorKind.UNKNOWN_FIELD, path, "action has no 'runs' mapping", "runs")
        return

    using = str(runs.get("using", ""))
    if using == "composite":
        job = _parse_job("composite", {"steps": runs.get("steps", [])}, 0, path, errors)
        job.line_number = line_of(runs)
        pipeline.jobs[job.name] = job
    elif using == "docker":
        image = str(runs.get("image", ""))
        job = Job(name="docker", index=0, origin_path=path, origin_name="docker", line_number=line_of(runs))
        if image.startswith("docker://"):
            job.steps.append(UsesStep(position=0, uses=image, package=purl.from_action(image)))
        pipeline.jobs[job.name] = job


def _parse_triggers(
    on_field: Union[str, list[Any], dict[Any, Any], None],
    path: str,
    errors: list[NormalizationError],
) -> list[Trigger]:
    """Normalize the 'on' field into Trigger objects."""
    triggers = []
    if isinstance(on_field, str):
        triggers = [Trigger(event=on_field)]
    elif isinstance(on_field, list):
        triggers = [Trigger(event=str(e)) for e in on_field]
    elif isinstance(on_field, dict):
        for event, scope in clean(on_field).items():
            trigger = Trigger(event=str(event))
            if isinstance(scope, dict):
                trigger.branches = as_str_list(scope.get("branches"))
                trigger.paths = as_str_list(scope.get("paths"))
            triggers.append(trigger)
    elif on_field is not None:
        record(errors, ErrorKind.UNKNOWN_FIELD, path, "'on' is not a string, list or mapping", "on")

    for trigger in triggers:
        if trigger.event not in EVENTS:
            record(errors, ErrorKind.UNKNOWN_FIELD, path, f"unknown event '{trigger.event}'", "on")
    return triggers


def _parse_permissions(
    perm_field: Union[str, dict[str, str], None],
    path: str,
    errors: list[NormalizationError],
    location: str,
) -> Optional[dict[str, str]]:
    """Normalize the permissions field into a dict or None."""
    if perm_field is None:
        return None
    if isinstance(perm_field, str):
        # e.g. "read-all" or "write-all"
        return {"_all": perm_field}
    if isinstance(perm_field, dict):
        return {str(k): str(v) for k, v in clean(perm_field).items()}
    record(errors, ErrorKind.UNKNOWN_FIELD, path, "permissions is not a string or mapping", location)
    return None


def _parse_env(env_field: Any) -> dict[str, Any]:
    return {str(k): v for k, v in clean(env_field).items()}


def _parse_runner_labels(runs_on: Any) -> list[str]:
    if isinstance(runs_on, dict):
        labels = as_str_list(runs_on.get("labels"))
        if runs_on.get("group"):
            labels.insert(0, str(runs_on["group"]))
        return labels
    return as_str_list(runs_on)


def _parse_images(job_raw: dict[Any, Any]) -> list[purl.PackageRef]:
    images = []
    container = job_raw.get("container")
    if isinstance(container, dict):
        container = container.get("image")
    services = job_raw.get("services")
    service_images = []
    if isinstance(services, dict):
        for service in clean(services).values():
            service_images.append(service.get("image") if isinstance(service, dict) else service)
    for image in [container] + service_images:
        if isinstance(image, str):
            ref = purl.from_image(image)
            if ref is not None:
                images.append(ref)
    return images


def _parse_step(
    position: int,
    step_raw: Any,
    job_id: str,
    path: str,
    errors: list[NormalizationError],
) -> Optional[Step]:
    """Parse a raw step into a UsesStep or RunStep, or record why not."""
    location = f"jobs.{job_id}.steps[{position}]"
    if not isinstance(step_raw, dict):
        record(errors, ErrorKind.UNKNOWN_FIELD, path, "step is not a mapping", location)
        return None

    for key in step_raw:
        if key != LINE_KEY and key not in STEP_KEYS:
            record(errors, ErrorKind.UNKNOWN_FIELD, path, f"unknown step key '{key}'", location)

    uses, run = step_raw.get("uses"), step_raw.get("run")
    if (uses is None) == (run is None):
        record(errors, ErrorKind.UNKNOWN_FIELD, path, "step must have exactly one of 'uses' or 'run'", location)
        return None

    name = step_raw.get("name")
    env = _parse_env(step_raw.get("env"))
    line_number = line_of(step_raw)
    if uses is not None:
        uses = str(uses)
        return UsesStep(
            position=position,
            uses=uses,
            package=purl.from_action(uses),
            with_args=clean(step_raw.get("with")),
            name=name,
            env=env,
            line_number=line_number,
        )
    return RunStep(
        position=position,
        script=str(run),
        shell=step_raw.get("shell"),
        name=name,
        env=env,
        line_number=line_number,
    )


def _parse_job(
    job_id: str,
    job_raw: dict[Any, Any],
    index: int,
    path: str,
    errors: list[NormalizationError],
) -> Job:
    """Parse a raw job dictionary into a Job dataclass."""
    for key in job_raw:
        if key != LINE_KEY and key not in JOB_KEYS:
            record(errors, ErrorKind.UNKNOWN_FIELD, path, f"unknown job key '{key}'", f"jobs.{job_id}")

    steps_raw = job_raw.get("steps") or []
    if not isinstance(steps_raw, list):
        record(errors, ErrorKind.UNKNOWN_FIELD, path, "'steps' is not a list", f"jobs.{job_id}.steps")
        steps_raw = []
    logger.debug("Parsing job '%s' with %d step(s)", job_id, len(steps_raw))

    steps = []
    for position, step_raw in enumerate(steps_raw):
        step = _parse_step(position, step_raw, job_id, path, errors)
        if step is not None:
            steps.append(step)

    uses = job_raw.get("uses")
    package = None
    if uses is not None:
        uses = str(uses)
        package = purl.from_action(uses)

    return Job(
        name=job_id,
        index=index,
        steps=steps,
        runner_labels=_parse_runner_labels(job_raw.get("runs-on")),
        permissions=_parse_permissions(job_raw.get("permissions"), path, errors, f"jobs.{job_id}.permissions"),
        env=_parse_env(job_raw.get("env")),
        needs=as_str_list(job_raw.get("needs")),
        images=_parse_images(job_raw),
        uses=uses,
        package=package,
        origin_path=path,
        origin_name=job_id,
        line_number=line_of(job_raw),
    )
