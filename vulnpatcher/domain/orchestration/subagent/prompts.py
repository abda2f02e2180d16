"""Prompt templates for the fix workflow roles"""

from typing import Sequence

from vulnpatcher.domain.models.code_context import RelevantContext
from vulnpatcher.domain.models.workflow_state import Vulnerability, VulnerabilityMatch, WorkflowContext


PLANNER_SYSTEM = "You are an AI orchestrator planning vulnerability fixes."

FIXER_SYSTEM = "You are a security engineer who writes minimal, secure patches."

REVIEWER_SYSTEM = (
    "You are a security lead reviewing a security patch. "
    "Evaluate the code for quality, maintainability, and architectural fit."
)

VALIDATOR_SYSTEM = "You are a security expert validating that a patch removes a vulnerability."

CONSENSUS_SYSTEM = "You are building consensus between multiple security experts."


def format_related_context(related: Sequence[RelevantContext]) -> str:
    if not related:
        return ""

    sections = ["## Related Code"]
    for ctx in related:
        sections.append(
            f"### {ctx.file_path} (lines {ctx.start_line}-{ctx.end_line - 1}, {ctx.file_type})\n"
            f"```\n{ctx.content.rstrip()}\n```"
        )
    return "\n\n".join(sections)


def _with_related(prompt: str, related: Sequence[RelevantContext]) -> str:
    block = format_related_context(related)
    return f"{prompt}\n\n{block}" if block else prompt


def plan_prompt(
    vulnerability: VulnerabilityMatch,
    context: WorkflowContext,
    related: Sequence[RelevantContext] = ()
) -> str:
    prompt = (
        "Create a task plan to fix this vulnerability:\n"
        f"Vulnerability: {vulnerability.vulnerability.title}\n"
        f"File: {vulnerability.file_path}\n"
        f"Code: {vulnerability.affected_code}\n"
        f"Language: {context.language or vulnerability.language or 'unknown'}\n"
        f"Framework: {context.framework or 'unknown'}"
    )
    return _with_related(prompt, related)


def fix_prompt(code: str, description: str, language: str, related: Sequence[RelevantContext] = ()) -> str:
    prompt = (
        "Generate a secure fix for the following vulnerability:\n"
        f"Language: {language}\n"
        f"Vulnerability: {description}\n"
        f"Affected Code:\n{code}\n"
        "Provide only the fixed code."
    )
    return _with_related(prompt, related)


def review_prompt(code: str, description: str, related: Sequence[RelevantContext] = ()) -> str:
    prompt = (
        "## Patch Details\n"
        f"### Code:\n```\n{code}\n```\n\n"
        f"### Vulnerability:\n{description}\n\n"
        "## Review Criteria\n"
        "1. **Code Quality**: Clean, readable, follows coding standards\n"
        "2. **Architecture**: Fits with existing patterns and design\n"
        "3. **Maintainability**: Easy to understand and modify\n"
        "4. **Performance**: No unnecessary overhead or bottlenecks\n"
        "5. **Testing**: Testable design, includes test guidance\n\n"
        "## Required Output Format\n"
        "OVERALL_ASSESSMENT: [APPROVED/NEEDS_CHANGES/REJECTED]\n"
        "ISSUES:\n"
        "- [CRITICAL/HIGH/MEDIUM/LOW]: Description\n"
        "SUGGESTIONS:\n"
        "- Description of improvement"
    )
    return _with_related(prompt, related)


def security_prompt(code: str, vulnerability: Vulnerability) -> str:
    return (
        "Analyze the security implications of the following fix:\n"
        f"Vulnerability: {vulnerability.title} ({vulnerability.id})\n"
        f"Severity: {vulnerability.severity.value}\n"
        f"Proposed Fix:\n{code}\n"
        "Evaluate: security completeness, potential bypasses, compliance, and remaining risks."
    )


def consensus_prompt(fix: str, review: str, validation: str) -> str:
    return (
        "Build a final solution based on:\n"
        f"Security Fix: {fix}\n"
        f"Review Feedback: {review}\n"
        f"Security Validation: {validation}"
    )
