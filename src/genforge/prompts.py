"""Prompt templates for the generation phases.

Templates are Jinja2 strings rendered with keyword arguments. Code and error
text is inserted verbatim, so templates must not be autoescaped.
"""

from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING, Any

from jinja2 import Template

if TYPE_CHECKING:
    from .models import ParsedError

logger = logging.getLogger(__name__)


PLANNING_SYSTEM_PROMPT = """You are a product-minded software architect planning a small web application.

Work out what problem the request solves and for whom, then choose the simplest
architecture that could work and is easy to change.

QUALITY PROFILES:
- "prototype": fast iteration, minimal tests, quick proof of concept
- "demo": stable for demos, core flows tested, reasonable error handling
- "production": tests required, no security flaws, clear error handling

Infer the qualityProfile from the request:
- explicit mentions of "production", "enterprise", "secure" -> "production"
- quick prototypes, experiments, learning exercises -> "prototype"
- otherwise "demo"

RESPOND WITH VALID JSON ONLY (no markdown):
{
  "summary": "What problem this solves and the technical approach",
  "architecture": "Components, state management, separation of concerns",
  "qualityProfile": "prototype" | "demo" | "production",
  "designNotes": "Optional: UX flows, empty states, loading states, accessibility",
  "searchNeeded": true/false,
  "searchQueries": ["query 1", "query 2"],
  "tasks": [
    {"id": "1", "title": "Task name", "description": "What to implement", "type": "build"}
  ]
}

Task types: "build" for code, "validate" for testing, "review" for final review.
Keep tasks focused. At most 5 tasks for simple apps.
For API integrations set searchNeeded to true with relevant queries."""

PLANNING_TEMPLATE = """{{ user_request }}
{% if existing_code %}
EXISTING CODE TO MODIFY:
{{ existing_code }}
{% endif %}{% if project_context %}
PROJECT CONTEXT:
{{ project_context }}
{% endif %}{% if conventions %}
CODING CONVENTIONS:
{% for convention in conventions %}- {{ convention.name }}: {{ convention.description }}
{% endfor %}{% endif %}{% if decisions %}
RECENT DECISIONS:
{% for decision in decisions %}- {{ decision.title }}: {{ decision.description }}
{% endfor %}{% endif %}{% if retry %}
Your previous answer was not valid JSON. Your response MUST be valid JSON only.
No text before or after the JSON object. Start with { and end with }.
{% endif %}"""

BUILDING_SYSTEM_TEMPLATE = """You write React code that people will read, maintain and extend.

Keep it simple. Name things for what they do. Give each component one reason to change.

TECHNICAL REQUIREMENTS:
1. Output ONLY executable React code - no explanations, no markdown
2. Include all necessary imports (React, useState, useEffect, etc.)
3. Create a complete, self-contained component that renders properly
4. Use modern React patterns (hooks, functional components)
5. Use Tailwind CSS classes for styling
6. Export default the main App component
7. Include a ReactDOM.createRoot render call at the bottom
8. When changing more than one file, start each file with a line [FILE: path/to/file.tsx]

CONTEXT:
{{ context or "No additional context." }}

PLAN:
{{ plan }}"""

BUILDING_CONTEXT_TEMPLATE = """{% if search_results %}WEB SEARCH RESULTS:
{{ search_results }}

{% endif %}{% if design_notes %}DESIGN NOTES:
{{ design_notes }}

{% endif %}{% if target_file %}TARGET FILE: {{ target_file }}

{% endif %}{% if existing_code %}EXISTING CODE:
{{ existing_code }}

{% endif %}{% if related_files %}{{ related_files }}

{% endif %}{% if priority_files %}FREQUENTLY EDITED FILES: {{ priority_files | join(", ") }}

{% endif %}{% if error_history %}KNOWN ERROR PATTERNS:
{% for stats in error_history %}- {{ stats.pattern }} (seen {{ stats.count }}x)
{% endfor %}{% endif %}"""

FIX_SYSTEM_PROMPT = "You are a code fixer. Output only the complete fixed code."

FIX_TEMPLATE = """Read the errors and fix the root cause, not just the symptom.

ERRORS:
{{ errors | join("\\n") }}
{% if diagnosis %}
DIAGNOSIS:
{{ diagnosis }}
{% endif %}
CODE:
{{ code }}

Output ONLY the complete fixed code - no explanations, no markdown:"""

DIAGNOSIS_SYSTEM_PROMPT = "You are a debugging expert. Be brief and actionable."

DIAGNOSIS_TEMPLATE = """Analyze these errors:
1. What caused each error? (root cause, not symptoms)
2. What is the specific fix? (minimal, targeted change)
3. What design flaw allowed this?

ERRORS:
{{ errors | join("\\n") }}

CODE SNIPPET:
{{ code_snippet }}

Provide a brief, actionable diagnosis:"""

PATCH_TEMPLATE = """Fix this {{ error.type.value }} error in {{ error.file }}{% if error.line %} at line {{ error.line }}{% endif %}:

{{ error.message }}
{% if error.suggestion %}Hint: {{ error.suggestion }}
{% endif %}{% if context %}
NOTES:
{{ context }}
{% endif %}
FILE CONTENT:
{{ file_content }}

Output ONLY the complete corrected file - no explanations, no markdown:"""

REVIEW_SYSTEM_PROMPT = "You are a principal engineer performing a rigorous code review."

REVIEW_TEMPLATE = """Look for what could break in production, not just what works in development.
Consider the user experience as much as the code. Security vulnerabilities are showstoppers.

PLAN SUMMARY:
{{ plan_summary }}

QUALITY PROFILE: {{ quality_profile }}

CODE:
{{ code }}

Review covering:
1. Architecture and code organization
2. Error handling and edge cases
3. Security concerns (injection, secrets, unsafe patterns)
4. Performance hotspots
5. UX issues (if UI is present)
6. Code quality and maintainability

RESPOND WITH VALID JSON ONLY:
{
  "summary": "High-level assessment of the code quality",
  "strengths": ["What the code does well"],
  "issues": [
    {"severity": "high|medium|low", "file": "optional/path", "description": "Issue description"}
  ],
  "recommendations": ["Specific, actionable recommendations"]
}"""

# Review and diagnosis only see the head of the code
REVIEW_CODE_LIMIT = 8000
DIAGNOSIS_SNIPPET_LIMIT = 1500
EXISTING_CODE_PLAN_LIMIT = 2000


def render(template: str, **kwargs: Any) -> str:
    return Template(template).render(**kwargs).strip()


def render_planning_prompt(
    user_request: str,
    existing_code: str = "",
    project_context: str = "",
    conventions: Any = (),
    decisions: Any = (),
    retry: bool = False,
) -> str:
    if existing_code and len(existing_code) > EXISTING_CODE_PLAN_LIMIT:
        existing_code = existing_code[:EXISTING_CODE_PLAN_LIMIT] + "..."
    return render(
        PLANNING_TEMPLATE,
        user_request=user_request,
        existing_code=existing_code,
        project_context=project_context,
        conventions=list(conventions),
        decisions=list(decisions),
        retry=retry,
    )


def render_building_context(**kwargs: Any) -> str:
    return render(BUILDING_CONTEXT_TEMPLATE, **kwargs)


def render_building_prompt(context: str, plan: dict[str, Any]) -> str:
    return render(BUILDING_SYSTEM_TEMPLATE, context=context, plan=json.dumps(plan, indent=2))


def render_fix_prompt(errors: list[str], code: str, diagnosis: str = "") -> str:
    return render(FIX_TEMPLATE, errors=errors, code=code, diagnosis=diagnosis)


def render_diagnosis_prompt(errors: list[str], code: str) -> str:
    return render(DIAGNOSIS_TEMPLATE, errors=errors, code_snippet=code[:DIAGNOSIS_SNIPPET_LIMIT])


def render_patch_prompt(error: ParsedError, file_content: str, context: str = "") -> str:
    return render(PATCH_TEMPLATE, error=error, file_content=file_content, context=context)


def render_review_prompt(plan_summary: str, quality_profile: str, code: str) -> str:
    return render(
        REVIEW_TEMPLATE,
        plan_summary=plan_summary,
        quality_profile=quality_profile,
        code=code[:REVIEW_CODE_LIMIT],
    )
