"""Tests for the GitLab CI/CD normalizer."""

from pipeaudit.model import ErrorKind, PipelineDocument, Platform, RunStep
from pipeaudit.parser import normalize_gitlab


def _normalize(text, documents=None):
    documents = documents or {}

    def resolve(path):
        if path in documents:
            return PipelineDocument(Platform.GITLAB, path, documents[path].encode())
        return None

    return normalize_gitlab(".gitlab-ci.yml", text.encode(), resolve)


def _kinds(errors):
    return [e.kind for e in errors]


# ---------------------------------------------------------------------------
# Jobs and steps
# ---------------------------------------------------------------------------

CONFIG = """
stages: [build, test]

variables:
  GLOBAL: "1"

default:
  image: node:20
  before_script:
    - npm ci

build:
  stage: build
  tags: [docker, linux]
  script:
    - npm run build
    - npm run lint
  after_script:
    - echo done

test:
  stage: test
  image:
    name: python:3.12
  services:
    - name: postgres:16
  needs:
    - job: build
  variables:
    DB: postgres
  script: pytest
"""


class TestJobs:
    def test_jobs_in_order(self):
        pipeline, errors = _normalize(CONFIG)
        assert errors == []
        assert pipeline.platform == Platform.GITLAB
        assert list(pipeline.jobs) == ["build", "test"]
        assert [j.index for j in pipeline.ordered_jobs()] == [0, 1]

    def test_script_lines_become_run_steps(self):
        pipeline, _ = _normalize(CONFIG)
        steps = pipeline.jobs["build"].steps
        assert all(isinstance(s, RunStep) for s in steps)
        assert [s.script for s in steps] == ["npm ci", "npm run build", "npm run lint", "echo done"]
        assert [s.position for s in steps] == [0, 1, 2, 3]
        assert [s.name for s in steps] == ["before_script[0]", "script[0]", "script[1]", "after_script[0]"]

    def test_scalar_script(self):
        pipeline, _ = _normalize(CONFIG)
        assert [s.script for s in pipeline.jobs["test"].steps] == ["npm ci", "pytest"]

    def test_tags_are_runner_labels(self):
        pipeline, _ = _normalize(CONFIG)
        assert pipeline.jobs["build"].runner_labels == ["docker", "linux"]
        assert pipeline.jobs["test"].runner_labels == []

    def test_default_and_job_images(self):
        pipeline, _ = _normalize(CONFIG)
        assert [i.purl for i in pipeline.jobs["build"].images] == ["pkg:docker/node@20"]
        assert [i.purl for i in pipeline.jobs["test"].images] == [
            "pkg:docker/python@3.12",
            "pkg:docker/postgres@16",
        ]

    def test_variables_and_needs(self):
        pipeline, _ = _normalize(CONFIG)
        assert pipeline.env == {"GLOBAL": "1"}
        assert pipeline.jobs["test"].env == {"DB": "postgres"}
        assert pipeline.jobs["test"].needs == ["build"]

    def test_hidden_jobs_are_skipped(self):
        text = ".template:\n  script: [echo]\nreal:\n  script: [make]\n"
        pipeline, _ = _normalize(text)
        assert list(pipeline.jobs) == ["real"]

    def test_deprecated_global_image(self):
        text = "image: ruby:3.3\nrspec:\n  script: [rspec]\n"
        pipeline, _ = _normalize(text)
        assert [i.purl for i in pipeline.jobs["rspec"].images] == ["pkg:docker/ruby@3.3"]

    def test_long_form_variable(self):
        text = "variables:\n  DEPLOY:\n    value: prod\n    description: target\njob:\n  script: [x]\n"
        pipeline, _ = _normalize(text)
        assert pipeline.env == {"DEPLOY": "prod"}


class TestExtends:
    def test_extends_merges_base(self):
        text = """
.base:
  image: alpine:3.19
  tags: [shared]
  variables:
    A: "1"
job:
  extends: .base
  variables:
    B: "2"
  script: [make]
"""
        pipeline, errors = _normalize(text)
        job = pipeline.jobs["job"]
        assert errors == []
        assert job.runner_labels == ["shared"]
        assert job.env == {"A": "1", "B": "2"}
        assert [i.purl for i in job.images] == ["pkg:docker/alpine@3.19"]

    def test_unknown_base(self):
        pipeline, errors = _normalize("job:\n  extends: .missing\n  script: [make]\n")
        assert "job" in pipeline.jobs
        assert _kinds(errors) == [ErrorKind.REFERENCE_RESOLUTION_FAILURE]

    def test_extends_cycle(self):
        text = ".a:\n  extends: .b\n.b:\n  extends: .a\njob:\n  extends: .a\n  script: [make]\n"
        pipeline, errors = _normalize(text)
        assert "job" in pipeline.jobs
        assert ErrorKind.REFERENCE_RESOLUTION_FAILURE in _kinds(errors)


# ---------------------------------------------------------------------------
# Includes
# ---------------------------------------------------------------------------

class TestIncludes:
    def test_remote_includes_become_packages(self):
        text = """
include:
  - project: my-group/templates
    ref: v1.2
    file: /ci.yml
  - component: gitlab.com/my-group/components/lint@1.0.0
  - remote: https://example.com/ci.yml
job:
  script: [make]
"""
        pipeline, errors = _normalize(text)
        assert [i.purl for i in pipeline.includes] == [
            "pkg:gitlab/my-group/templates@v1.2",
            "pkg:gitlab/my-group/components/lint@1.0.0",
        ]
        assert _kinds(errors) == [ErrorKind.REFERENCE_RESOLUTION_FAILURE]

    def test_remote_and_template_includes_are_reported(self):
        text = "include:\n  - remote: https://example.com/ci.yml\n  - template: Auto-DevOps.gitlab-ci.yml\njob:\n  script: [make]\n"
        pipeline, errors = _normalize(text)
        assert pipeline.includes == []
        assert _kinds(errors) == [ErrorKind.REFERENCE_RESOLUTION_FAILURE] * 2
        assert "https://example.com/ci.yml" in errors[0].message
        assert "Auto-DevOps.gitlab-ci.yml" in errors[1].message

    def test_local_include_is_merged(self):
        templates = ".build:\n  image: golang:1.22\n  script: [go build]\n"
        text = "include: ci/build.yml\njob:\n  extends: .build\n"
        pipeline, errors = _normalize(text, {"ci/build.yml": templates})
        assert errors == []
        job = pipeline.jobs["job"]
        assert [s.script for s in job.steps] == ["go build"]
        assert [i.purl for i in job.images] == ["pkg:docker/golang@1.22"]

    def test_missing_local_include(self):
        pipeline, errors = _normalize("include:\n  - local: /ci/missing.yml\njob:\n  script: [x]\n")
        assert "job" in pipeline.jobs
        assert _kinds(errors) == [ErrorKind.REFERENCE_RESOLUTION_FAILURE]

    def test_wildcard_include(self):
        _, errors = _normalize("include:\n  - local: ci/*.yml\njob:\n  script: [x]\n")
        assert _kinds(errors) == [ErrorKind.REFERENCE_RESOLUTION_FAILURE]

    def test_recursive_include(self):
        loop = "include: ci/loop.yml\n"
        _, errors = _normalize("include: ci/loop.yml\njob:\n  script: [x]\n", {"ci/loop.yml": loop})
        assert _kinds(errors) == [ErrorKind.REFERENCE_RESOLUTION_FAILURE]


# ---------------------------------------------------------------------------
# Downstream pipelines
# ---------------------------------------------------------------------------

CHILD = """
variables:
  CI_DEBUG_TRACE: "true"
build:
  image: alpine:3.19
  tags: [my-private-runner]
  script: [make]
test:
  needs: [build]
  script: [make test]
"""


class TestDownstreamPipelines:
    def test_local_child_pipeline_is_inlined(self):
        text = "lint:\n  script: [make lint]\ntrigger_child:\n  trigger:\n    include: ci/child.yml\n"
        pipeline, errors = _normalize(text, {"ci/child.yml": CHILD})
        assert errors == []
        assert list(pipeline.jobs) == ["lint", "trigger_child", "trigger_child/build", "trigger_child/test"]
        build = pipeline.jobs["trigger_child/build"]
        assert build.index == 2
        assert build.origin_path == "ci/child.yml"
        assert build.origin_name == "build"
        assert build.runner_labels == ["my-private-runner"]
        assert [i.purl for i in build.images] == ["pkg:docker/alpine@3.19"]
        assert build.env == {"CI_DEBUG_TRACE": "true"}
        assert pipeline.jobs["trigger_child/test"].needs == ["trigger_child/build"]

    def test_local_mapping_and_external_entries(self):
        text = """
deploy:
  trigger:
    include:
      - local: /ci/child.yml
      - project: my-group/pipelines
        ref: main
        file: /deploy.yml
      - component: gitlab.com/my-group/components/scan@2.0
"""
        pipeline, errors = _normalize(text, {"ci/child.yml": CHILD})
        assert errors == []
        assert "deploy/build" in pipeline.jobs
        assert [i.purl for i in pipeline.includes] == [
            "pkg:gitlab/my-group/pipelines@main",
            "pkg:gitlab/my-group/components/scan@2.0",
        ]

    def test_missing_child_pipeline(self):
        pipeline, errors = _normalize("child:\n  trigger:\n    include: ci/missing.yml\n")
        assert list(pipeline.jobs) == ["child"]
        assert _kinds(errors) == [ErrorKind.REFERENCE_RESOLUTION_FAILURE]

    def test_generated_child_pipeline_is_reported(self):
        text = "child:\n  trigger:\n    include:\n      - artifact: generated.yml\n        job: generate\n"
        _, errors = _normalize(text)
        assert _kinds(errors) == [ErrorKind.REFERENCE_RESOLUTION_FAILURE]
        assert "generated.yml" in errors[0].message

    def test_child_pipeline_triggering_parent(self):
        loop = "again:\n  trigger:\n    include: .gitlab-ci.yml\n"
        text = "child:\n  trigger:\n    include: ci/loop.yml\n"
        pipeline, errors = _normalize(text, {"ci/loop.yml": loop, ".gitlab-ci.yml": text})
        assert list(pipeline.jobs) == ["child", "child/again"]
        assert _kinds(errors) == [ErrorKind.REFERENCE_RESOLUTION_FAILURE]

    def test_multi_project_trigger(self):
        text = "deploy:\n  trigger:\n    project: my-group/deployer\n    branch: stable\n"
        pipeline, errors = _normalize(text)
        assert errors == []
        assert pipeline.jobs["deploy"].package.purl == "pkg:gitlab/my-group/deployer@stable"

    def test_short_form_trigger(self):
        pipeline, _ = _normalize("deploy:\n  trigger: my-group/deployer\n")
        assert pipeline.jobs["deploy"].package.purl == "pkg:gitlab/my-group/deployer"

    def test_trigger_without_target(self):
        _, errors = _normalize("deploy:\n  trigger:\n    strategy: depend\n")
        assert _kinds(errors) == [ErrorKind.UNKNOWN_FIELD]


# ---------------------------------------------------------------------------
# Triggers
# ---------------------------------------------------------------------------

class TestTriggers:
    def test_default_trigger_is_push(self):
        pipeline, _ = _normalize("job:\n  script: [make]\n")
        assert pipeline.events == ["push"]

    def test_workflow_rules(self):
        text = """
workflow:
  rules:
    - if: $CI_PIPELINE_SOURCE == "merge_request_event"
    - if: $CI_PIPELINE_SOURCE == 'schedule'
job:
  script: [make]
"""
        pipeline, _ = _normalize(text)
        assert pipeline.events == ["merge_request_event", "schedule"]

    def test_merge_request_variable_in_job_rules(self):
        text = "job:\n  rules:\n    - if: $CI_MERGE_REQUEST_IID\n  script: [make]\n"
        pipeline, _ = _normalize(text)
        assert pipeline.events == ["merge_request_event"]

    def test_only_keywords(self):
        text = "job:\n  only: [merge_requests, tags]\n  script: [make]\n"
        pipeline, _ = _normalize(text)
        assert pipeline.events == ["merge_request_event", "push"]


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class TestNormalizationErrors:
    def test_invalid_yaml(self):
        pipeline, errors = _normalize("job: [unclosed\n")
        assert pipeline.jobs == {}
        assert _kinds(errors) == [ErrorKind.UNPARSABLE_DOCUMENT]

    def test_job_without_script(self):
        pipeline, errors = _normalize("job:\n  stage: build\n")
        assert pipeline.jobs["job"].steps == []
        assert _kinds(errors) == [ErrorKind.UNKNOWN_FIELD]

    def test_unknown_needs(self):
        pipeline, errors = _normalize("job:\n  needs: [ghost]\n  script: [make]\n")
        assert pipeline.jobs["job"].needs == []
        assert _kinds(errors) == [ErrorKind.REFERENCE_RESOLUTION_FAILURE]

    def test_scalar_needs(self):
        pipeline, errors = _normalize("build:\n  script: [make]\ntest:\n  needs: build\n  script: [make test]\n")
        assert pipeline.jobs["test"].needs == ["build"]
        assert _kinds(errors) == [ErrorKind.UNKNOWN_FIELD]

    def test_component_spec_header_is_skipped(self):
        text = "spec:\n  inputs:\n    stage:\n      default: test\n---\njob:\n  script: [make]\n"
        pipeline, errors = _normalize(text)
        assert errors == []
        assert list(pipeline.jobs) == ["job"]


# ---------------------------------------------------------------------------
# Fixture repository
# ---------------------------------------------------------------------------

class TestFixtureRepository:
    def test_gitlab_fixture(self, gitlab_result):
        assert gitlab_result.errors == []
        assert gitlab_result.pipelines == 1

    def test_local_template_images_resolved(self, gitlab_result):
        purls = {f.details().get("purl") for f in gitlab_result.findings if f.rule_id == "unpinned_action"}
        assert purls == {
            "pkg:gitlab/my-group/ci-templates@main",
            "pkg:docker/docker@24.0",
            "pkg:docker/docker@24.0-dind",
        }
