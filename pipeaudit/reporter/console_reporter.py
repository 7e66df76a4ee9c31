"""
Console reporter: prints findings to the terminal with colors and formatting.
"""

from pipeaudit.orchestrator import RepoResult
from pipeaudit.rules.engine import Finding, Severity


# ANSI color codes for terminal output
COLORS = {
    Severity.CRITICAL: "\033[91m",  # bright red
    Severity.HIGH:     "\033[31m",  # red
    Severity.MEDIUM:   "\033[33m",  # yellow
    Severity.LOW:      "\033[36m",  # cyan
    Severity.NOTE:     "\033[2m",   # dim
}
BOLD = "\033[1m"
RESET = "\033[0m"

SEVERITY_ORDER = [Severity.CRITICAL, Severity.HIGH, Severity.MEDIUM, Severity.LOW, Severity.NOTE]


def _severity_badge(severity: Severity) -> str:
    color = COLORS.get(severity, "")
    label = severity.value.upper()
    return f"{color}{BOLD}[{label:8s}]{RESET}"


def _location(f: Finding) -> str:
    where = f.file_path
    if f.line_number:
        where += f":{f.line_number}"
    return where


def _report_repository(result: RepoResult, lines: list[str]) -> None:
    lines.append(f"  {BOLD}Repository: {result.repository}{RESET}")
    if result.error is not None:
        lines.append(f"    Scan failed: {result.error}")
        lines.append("")
        return

    lines.append(f"    {result.pipelines} pipeline(s) scanned")
    for err in result.errors:
        lines.append(f"    Warning: {err}")

    if not result.findings:
        lines.append("    ✅ No security issues found!")
        lines.append("")
        return

    counts: dict[Severity, int] = {}
    for f in result.findings:
        counts[f.severity] = counts.get(f.severity, 0) + 1

    lines.append(f"    Found {BOLD}{len(result.findings)}{RESET} issue(s):")
    for sev in SEVERITY_ORDER:
        if sev in counts:
            lines.append(f"      {_severity_badge(sev)} × {counts[sev]}")
    lines.append(f"    {'-' * 54}")

    for i, f in enumerate(result.findings, 1):
        lines.append("")
        lines.append(f"    {_severity_badge(f.severity)} #{i}: {BOLD}{f.title}{RESET}")
        lines.append(f"      Rule:  {f.rule_id}")
        lines.append(f"      File:  {_location(f)}")
        if f.job:
            lines.append(f"      Job:   {f.job}")
        if f.step is not None:
            lines.append(f"      Step:  {f.step} ({f.step_name})")
        for key, value in f.evidence:
            lines.append(f"      {key}: {value}")
        lines.append("")
        for desc_line in f.message.split("\n"):
            lines.append(f"      {desc_line}")
    lines.append("")


def report_console(results: list[RepoResult]) -> str:
    """
    Format scan results as a colored console report, one section per repository.

    Returns:
        The formatted report string (also prints it).
    """
    lines = []

    lines.append("")
    lines.append(f"{BOLD}{'=' * 60}{RESET}")
    lines.append(f"{BOLD}  Pipeline Security Report{RESET}")
    lines.append(f"{BOLD}{'=' * 60}{RESET}")
    lines.append("")

    if not results:
        lines.append("  No repositories scanned.")
        lines.append("")

    for result in results:
        _report_repository(result, lines)

    lines.append(f"{BOLD}{'=' * 60}{RESET}")
    lines.append("")

    report = "\n".join(lines)
    print(report)
    return report
