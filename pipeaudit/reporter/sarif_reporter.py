"""
SARIF reporter: outputs findings in SARIF 2.1.0 format for code scanning.

SARIF (Static Analysis Results Interchange Format) is a JSON standard that
GitHub Code Scanning and GitLab understand. Upload the output and findings
appear as annotations on the pipeline files.

Reference: https://docs.github.com/en/code-security/code-scanning/integrating-with-code-scanning/sarif-support-for-code-scanning
"""

import json
import logging
from typing import Any

from pipeaudit import __version__
from pipeaudit.orchestrator import RepoResult
from pipeaudit.rules.engine import Finding, Severity

logger = logging.getLogger(__name__)

# Map our severity levels to SARIF notification levels
_SARIF_LEVEL: dict[Severity, str] = {
    Severity.CRITICAL: "error",
    Severity.HIGH: "error",
    Severity.MEDIUM: "warning",
    Severity.LOW: "note",
    Severity.NOTE: "none",
}

# Map our severity levels to SARIF security-severity scores (CVSS-like 0.0–10.0)
_SECURITY_SEVERITY: dict[Severity, str] = {
    Severity.CRITICAL: "9.0",
    Severity.HIGH: "7.0",
    Severity.MEDIUM: "5.0",
    Severity.LOW: "3.0",
    Severity.NOTE: "0.0",
}

TOOL_NAME = "pipeaudit"
TOOL_URI = "https://pypi.org/project/pipeaudit/"
SARIF_SCHEMA = "https://raw.githubusercontent.com/oasis-tcs/sarif-spec/master/Schemata/sarif-schema-2.1.0.json"
SARIF_VERSION = "2.1.0"


def _build_rules(findings: list[Finding]) -> list[dict[str, Any]]:
    """Build the SARIF rules array, one entry per unique rule ID."""
    seen: dict[str, Finding] = {}
    for f in findings:
        if f.rule_id not in seen:
            seen[f.rule_id] = f

    rules = []
    for rule_id in sorted(seen):
        f = seen[rule_id]
        rules.append({
            "id": rule_id,
            "name": rule_id.replace("_", " ").title().replace(" ", ""),
            "shortDescription": {"text": f.title},
            "fullDescription": {"text": f.title},
            "helpUri": f"{TOOL_URI}#{rule_id}",
            "properties": {
                "security-severity": _SECURITY_SEVERITY[f.severity],
                "tags": ["security", "supply-chain", "ci-cd"],
            },
        })
    return rules


def _build_logical_locations(f: Finding) -> list[dict[str, str]]:
    """Build logical location entries (job / step) for a finding."""
    locations = []
    if f.job:
        locations.append({
            "name": f.job,
            "kind": "job",
        })
    if f.step is not None:
        locations.append({
            "name": f.step_name or str(f.step),
            "fullyQualifiedName": f"{f.job}.steps[{f.step}]",
            "kind": "step",
        })
    return locations


def _build_result(f: Finding, repository: str) -> dict[str, Any]:
    """Build a single SARIF result object from a Finding."""
    return {
        "ruleId": f.rule_id,
        "level": _SARIF_LEVEL[f.severity],
        "message": {"text": f.message},
        "locations": [
            {
                "physicalLocation": {
                    "artifactLocation": {
                        "uri": f.file_path,
                        "uriBaseId": "%SRCROOT%",
                    },
                    "region": {"startLine": f.line_number or 1},
                },
                "logicalLocations": _build_logical_locations(f),
            }
        ],
        "properties": {"repository": repository, **f.details()},
    }


def report_sarif(results: list[RepoResult]) -> str:
    """
    Format scan results as a SARIF 2.1.0 JSON string.

    The output can be uploaded to GitHub Code Scanning via:
      gh code-scanning upload-results --sarif results.sarif

    Returns:
        A SARIF 2.1.0 JSON string with a single run.
    """
    findings = [f for r in results for f in r.findings]
    sarif: dict[str, Any] = {
        "$schema": SARIF_SCHEMA,
        "version": SARIF_VERSION,
        "runs": [
            {
                "tool": {
                    "driver": {
                        "name": TOOL_NAME,
                        "version": __version__,
                        "informationUri": TOOL_URI,
                        "rules": _build_rules(findings),
                    }
                },
                "results": [_build_result(f, r.repository) for r in results for f in r.findings],
            }
        ],
    }

    output = json.dumps(sarif, indent=2)
    logger.info("SARIF report: %d finding(s), %d bytes", len(findings), len(output))
    return output
