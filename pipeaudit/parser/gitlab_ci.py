"""
Normalizer for GitLab CI/CD configuration (.gitlab-ci.yml).

Every script line of a job becomes a RunStep, in before_script, script,
after_script order. Local includes are merged in before the file's own
keys; project and component includes are recorded as package references.
A trigger job names either a downstream project, recorded as the job's
package, or a child pipeline whose local files are inlined under the
trigger job's name.
"""

import logging
import re
from typing import Any, Optional

import yaml

from pipeaudit import purl
from pipeaudit.model import (
    ErrorKind,
    Job,
    NormalizationError,
    Pipeline,
    Platform,
    RunStep,
    Trigger,
)
from pipeaudit.parser.common import (
    MAX_RESOLUTION_DEPTH,
    Resolver,
    as_str_list,
    deep_merge,
    record,
    validate_needs,
)
from pipeaudit.parser.yaml_loader import clean, line_of, load_yaml_documents

logger = logging.getLogger(__name__)

EVENTS = frozenset({
    "api", "chat", "external", "external_pull_request_event", "merge_request_event",
    "ondemand_dast_scan", "ondemand_dast_validation", "parent_pipeline", "pipeline",
    "push", "schedule", "security_orchestration_policy", "trigger", "web", "webide",
})

RESERVED_KEYS = frozenset({
    "stages", "variables", "default", "include", "workflow", "image", "services",
    "before_script", "after_script", "cache", "types", "spec",
})

SCRIPT_SECTIONS = ("before_script", "script", "after_script")

# 'only:' keywords mapped to $CI_PIPELINE_SOURCE values
ONLY_KEYWORDS = {
    "merge_requests": "merge_request_event",
    "external_pull_requests": "external_pull_request_event",
    "pushes": "push",
    "branches": "push",
    "tags": "push",
    "schedules": "schedule",
    "triggers": "trigger",
    "pipelines": "pipeline",
    "web": "web",
    "api": "api",
    "chat": "chat",
}

PIPELINE_SOURCE_PATTERN = re.compile(r"\$CI_PIPELINE_SOURCE\s*==\s*[\"']([A-Za-z_]+)[\"']")
MERGE_REQUEST_VAR_PATTERN = re.compile(r"\$CI_MERGE_REQUEST_")


def normalize_gitlab(
    path: str,
    content: bytes,
    resolver: Optional[Resolver] = None,
) -> tuple[Pipeline, list[NormalizationError]]:
    """
    Normalize one GitLab CI/CD configuration file.

    Returns:
        The best-effort Pipeline and every recoverable error met on the way.
    """
    errors: list[NormalizationError] = []
    pipeline = Pipeline(platform=Platform.GITLAB, file_path=path)

    raw = _load_config(path, content, errors)
    if raw is None:
        return pipeline, errors

    raw = _merge_includes(pipeline, raw, errors, resolver, stack=(path,))
    pipeline.env = _parse_variables(raw.get("variables"))
    sources = _parse_jobs(pipeline, raw, errors, resolver, stack=(path,))
    pipeline.triggers = _build_triggers(sources, path, errors)
    validate_needs(pipeline.jobs, path, errors)

    logger.debug(
        "Normalized '%s': %d job(s), triggers=%s, %d error(s)",
        path, len(pipeline.jobs), pipeline.events, len(errors),
    )
    return pipeline, errors


def _parse_jobs(
    pipeline: Pipeline,
    raw: dict[Any, Any],
    errors: list[NormalizationError],
    resolver: Optional[Resolver],
    stack: tuple[str, ...],
    origins: Optional[dict[str, str]] = None,
) -> list[str]:
    """Add the jobs of one loaded configuration; returns the pipeline sources its rules name."""
    defaults = raw.get("default") if isinstance(raw.get("default"), dict) else {}
    # Deprecated global keywords act as defaults.
    for key in ("image", "services", "before_script", "after_script"):
        if key in raw and key not in defaults:
            defaults = dict(defaults, **{key: raw[key]})

    raw_jobs = {
        str(k): v for k, v in clean(raw).items()
        if str(k) not in RESERVED_KEYS
    }
    sources: list[str] = _sources_from_rules(raw.get("workflow"))

    for name, job_raw in raw_jobs.items():
        if name.startswith("."):
            continue
        path = (origins or {}).get(name, pipeline.file_path)
        if not isinstance(job_raw, dict):
            record(errors, ErrorKind.UNKNOWN_FIELD, path, f"unknown top-level key '{name}'", name)
            continue
        resolved = _resolve_extends(name, raw_jobs, path, errors, stack=(name,))
        job = _parse_job(name, resolved, defaults, len(pipeline.jobs), path, errors)
        pipeline.jobs[job.name] = job
        sources.extend(_sources_from_rules(resolved))
        sources.extend(_sources_from_only(resolved.get("only")))
        if "trigger" in resolved:
            _parse_trigger(pipeline, job, resolved["trigger"], path, errors, resolver, stack)
    return sources


def _load_config(path: str, content: bytes, errors: list[NormalizationError]) -> Optional[dict[Any, Any]]:
    try:
        docs = [d for d in load_yaml_documents(content) if d is not None]
    except yaml.YAMLError as e:
        record(errors, ErrorKind.UNPARSABLE_DOCUMENT, path, f"invalid YAML: {e}")
        return None

    # CI/CD components put a 'spec:' header document before the config.
    if len(docs) > 1 and isinstance(docs[0], dict) and set(clean(docs[0])) == {"spec"}:
        docs = docs[1:]
    raw = docs[0] if docs else None
    if not isinstance(raw, dict):
        record(errors, ErrorKind.UNPARSABLE_DOCUMENT, path, "document is not a YAML mapping")
        return None
    return raw


def _merge_includes(
    pipeline: Pipeline,
    raw: dict[Any, Any],
    errors: list[NormalizationError],
    resolver: Optional[Resolver],
    stack: tuple[str, ...],
) -> dict[Any, Any]:
    """Record remote includes and merge local ones under this file's keys."""
    includes = raw.get("include")
    if includes is None:
        return raw
    if not isinstance(includes, list):
        includes = [includes]

    merged: dict[Any, Any] = {}
    for entry in includes:
        entry = _include_entry(entry)
        if entry is None:
            record(errors, ErrorKind.UNKNOWN_FIELD, pipeline.file_path, "include entry is not a string or mapping", "include")
        elif "local" in entry:
            included = _load_local_include(pipeline, str(entry["local"]), errors, resolver, stack)
            if included is not None:
                merged = deep_merge(merged, included)
        else:
            _record_external_include(pipeline, entry, errors, "include")

    body = {k: v for k, v in raw.items() if k != "include"}
    return deep_merge(merged, body)


def _include_entry(entry: Any) -> Optional[dict[Any, Any]]:
    if isinstance(entry, str):
        return {"remote": entry} if "://" in entry else {"local": entry}
    return entry if isinstance(entry, dict) else None


def _record_external_include(
    pipeline: Pipeline,
    entry: dict[Any, Any],
    errors: list[NormalizationError],
    location: str,
) -> None:
    """Project and component includes become package references; anything else is unresolvable."""
    if "project" in entry:
        ref = purl.from_gitlab_project(str(entry["project"]), entry.get("ref"))
    elif "component" in entry:
        ref = purl.from_gitlab_component(str(entry["component"]))
    else:
        kind = next((k for k in ("remote", "template", "artifact") if k in entry), None)
        what = f"{kind} include '{entry[kind]}'" if kind else f"include {clean(entry)}"
        record(errors, ErrorKind.REFERENCE_RESOLUTION_FAILURE, pipeline.file_path,
               f"{what} is not part of the repository and was not scanned", location)
        return
    if ref is not None:
        pipeline.includes.append(ref)


def _load_local_include(
    pipeline: Pipeline,
    target: str,
    errors: list[NormalizationError],
    resolver: Optional[Resolver],
    stack: tuple[str, ...],
) -> Optional[dict[Any, Any]]:
    target = target.lstrip("/")
    if "*" in target:
        record(errors, ErrorKind.REFERENCE_RESOLUTION_FAILURE, pipeline.file_path,
               f"wildcard include '{target}' is not supported", "include")
        return None
    if target in stack or len(stack) >= MAX_RESOLUTION_DEPTH:
        record(errors, ErrorKind.REFERENCE_RESOLUTION_FAILURE, pipeline.file_path,
               f"include '{target}' is recursive or nested too deeply", "include")
        return None

    document = resolver(target) if resolver else None
    if document is None:
        record(errors, ErrorKind.REFERENCE_RESOLUTION_FAILURE, pipeline.file_path,
               f"included file '{target}' not found", "include")
        return None

    raw = _load_config(target, document.content, errors)
    if raw is None:
        return None
    return _merge_includes(pipeline, raw, errors, resolver, stack + (target,))


def _resolve_extends(
    name: str,
    raw_jobs: dict[str, Any],
    path: str,
    errors: list[NormalizationError],
    stack: tuple[str, ...],
) -> dict[Any, Any]:
    job = raw_jobs[name] if isinstance(raw_jobs.get(name), dict) else {}
    bases = as_str_list(job.get("extends"))
    merged: dict[Any, Any] = {}
    for base in bases:
        if base in stack:
            record(errors, ErrorKind.REFERENCE_RESOLUTION_FAILURE, path,
                   f"'{name}' extends '{base}' in a cycle", f"{name}.extends")
            continue
        if not isinstance(raw_jobs.get(base), dict):
            record(errors, ErrorKind.REFERENCE_RESOLUTION_FAILURE, path,
                   f"'{name}' extends unknown job '{base}'", f"{name}.extends")
            continue
        merged = deep_merge(merged, _resolve_extends(base, raw_jobs, path, errors, stack + (base,)))
    return deep_merge(merged, {k: v for k, v in job.items() if k != "extends"})


def _parse_variables(variables: Any) -> dict[str, Any]:
    env = {}
    for key, value in clean(variables).items():
        # Long form: {value: ..., description: ...}
        if isinstance(value, dict):
            value = value.get("value")
        env[str(key)] = value
    return env


def _image_names(value: Any) -> list[str]:
    names = []
    for item in value if isinstance(value, list) else [value]:
        if isinstance(item, dict):
            item = item.get("name")
        if isinstance(item, str):
            names.append(item)
    return names


def _script_lines(value: Any) -> list[str]:
    lines = []
    for item in value if isinstance(value, list) else [value]:
        if isinstance(item, list):
            lines.extend(str(i) for i in item if i is not None)
        elif item is not None:
            lines.append(str(item))
    return lines


def _parse_job(
    name: str,
    job_raw: dict[Any, Any],
    defaults: dict[Any, Any],
    index: int,
    path: str,
    errors: list[NormalizationError],
) -> Job:
    def setting(key: str) -> Any:
        return job_raw[key] if key in job_raw else defaults.get(key)

    if "script" not in job_raw and "trigger" not in job_raw:
        record(errors, ErrorKind.UNKNOWN_FIELD, path, f"job '{name}' has no script or trigger", name)

    steps = []
    for section in SCRIPT_SECTIONS:
        value = job_raw.get("script") if section == "script" else setting(section)
        for n, line in enumerate(_script_lines(value)):
            steps.append(RunStep(position=len(steps), script=line, name=f"{section}[{n}]"))
    logger.debug("Parsing job '%s' with %d script line(s)", name, len(steps))

    images = []
    for image in _image_names(setting("image")) + _image_names(setting("services")):
        ref = purl.from_image(image)
        if ref is not None:
            images.append(ref)

    raw_needs = job_raw.get("needs") or []
    if not isinstance(raw_needs, list):
        record(errors, ErrorKind.UNKNOWN_FIELD, path, f"'needs' of job '{name}' is not a list", f"{name}.needs")
        raw_needs = as_str_list(raw_needs)

    needs = []
    for need in raw_needs:
        if isinstance(need, dict):
            if "pipeline" in need or "project" in need:
                continue
            need = need.get("job")
        if need is not None:
            needs.append(str(need))

    return Job(
        name=name,
        index=index,
        steps=steps,
        runner_labels=as_str_list(setting("tags")),
        env=_parse_variables(job_raw.get("variables")),
        needs=needs,
        images=images,
        origin_path=path,
        origin_name=name,
        line_number=line_of(job_raw),
    )


def _parse_trigger(
    pipeline: Pipeline,
    job: Job,
    trigger: Any,
    path: str,
    errors: list[NormalizationError],
    resolver: Optional[Resolver],
    stack: tuple[str, ...],
) -> None:
    """Multi-project triggers become package references; child pipelines are inlined."""
    if isinstance(trigger, str):
        trigger = {"project": trigger}
    if not isinstance(trigger, dict):
        record(errors, ErrorKind.UNKNOWN_FIELD, path, f"trigger of job '{job.name}' is not a string or mapping",
               f"{job.name}.trigger")
        return

    if "project" in trigger:
        job.package = purl.from_gitlab_project(str(trigger["project"]), trigger.get("branch"))
    elif "include" in trigger:
        _inline_child_pipeline(pipeline, job, trigger["include"], errors, resolver, stack)
    else:
        record(errors, ErrorKind.UNKNOWN_FIELD, path, f"trigger of job '{job.name}' has no project or include",
               f"{job.name}.trigger")


def _inline_child_pipeline(
    pipeline: Pipeline,
    caller: Job,
    includes: Any,
    errors: list[NormalizationError],
    resolver: Optional[Resolver],
    stack: tuple[str, ...],
) -> None:
    """Append the jobs of a local child pipeline under '<caller>/<job>'."""
    location = f"{caller.name}.trigger.include"
    merged: dict[Any, Any] = {}
    origins: dict[str, str] = {}
    for entry in includes if isinstance(includes, list) else [includes]:
        entry = _include_entry(entry)
        if entry is None:
            record(errors, ErrorKind.UNKNOWN_FIELD, pipeline.file_path, "include entry is not a string or mapping", location)
            continue
        if "local" not in entry:
            _record_external_include(pipeline, entry, errors, location)
            continue
        target = str(entry["local"]).lstrip("/")
        included = _load_local_include(pipeline, target, errors, resolver, stack)
        if included is None:
            continue
        for key in clean(included):
            origins.setdefault(str(key), target)
        merged = deep_merge(merged, included)

    if not origins:
        return
    child = Pipeline(platform=Platform.GITLAB, file_path=next(iter(origins.values())))
    child.env = _parse_variables(merged.get("variables"))
    _parse_jobs(child, merged, errors, resolver, stack + tuple(sorted(set(origins.values()))), origins)
    validate_needs(child.jobs, child.file_path, errors)

    logger.debug("Inlining %d job(s) from %s into %s", len(child.jobs), child.file_path, caller.name)
    for child_job in child.ordered_jobs():
        name = f"{caller.name}/{child_job.name}"
        child_job.name = name
        child_job.index = len(pipeline.jobs)
        child_job.needs = [f"{caller.name}/{dep}" for dep in child_job.needs]
        # Child pipeline variables apply to every child job.
        child_job.env = dict(child.env, **child_job.env)
        pipeline.jobs[name] = child_job
    pipeline.includes.extend(child.includes)


def _sources_from_rules(section: Any) -> list[str]:
    if not isinstance(section, dict) or not isinstance(section.get("rules"), list):
        return []
    sources = []
    for rule in section["rules"]:
        condition = rule.get("if") if isinstance(rule, dict) else None
        if not isinstance(condition, str):
            continue
        sources.extend(PIPELINE_SOURCE_PATTERN.findall(condition))
        if MERGE_REQUEST_VAR_PATTERN.search(condition):
            sources.append("merge_request_event")
    return sources


def _sources_from_only(only: Any) -> list[str]:
    if isinstance(only, dict):
        only = only.get("refs")
    return [ONLY_KEYWORDS[k] for k in as_str_list(only) if k in ONLY_KEYWORDS]


def _build_triggers(sources: list[str], path: str, errors: list[NormalizationError]) -> list[Trigger]:
    seen: list[str] = []
    for source in sources:
        if source not in seen:
            seen.append(source)
    if not seen:
        seen = ["push"]
    for source in seen:
        if source not in EVENTS:
            record(errors, ErrorKind.UNKNOWN_FIELD, path, f"unknown pipeline source '{source}'", "rules")
    return [Trigger(event=source) for source in seen]
