"""
JSON reporter: outputs scan results as structured JSON for programmatic use.
"""

import json
import logging
from typing import Any

from pipeaudit.orchestrator import RepoResult
from pipeaudit.rules.engine import Finding

logger = logging.getLogger(__name__)


def finding_to_dict(f: Finding) -> dict[str, Any]:
    return {
        "rule_id": f.rule_id,
        "severity": f.severity.value,
        "title": f.title,
        "message": f.message,
        "file_path": f.file_path,
        "job": f.job,
        "job_index": f.job_index,
        "step": f.step,
        "step_name": f.step_name,
        "line_number": f.line_number,
        "details": f.details(),
    }


def report_json(results: list[RepoResult]) -> str:
    """
    Format scan results as a JSON string.

    Returns:
        A JSON document with one entry per repository and a finding total.
    """
    data = {
        "total": sum(len(r.findings) for r in results),
        "repositories": [
            {
                "repository": r.repository,
                "pipelines": r.pipelines,
                "error": str(r.error) if r.error is not None else None,
                "errors": [
                    {"kind": e.kind.value, "file_path": e.file_path, "location": e.location, "message": e.message}
                    for e in r.errors
                ],
                "findings": [finding_to_dict(f) for f in r.findings],
            }
            for r in results
        ],
    }
    output = json.dumps(data, indent=2)
    logger.info("JSON report: %d repositories, %d bytes", len(results), len(output))
    return output
