"""Prompt and brief assembly for agent dispatches.

The system prompt carries identity (persona, role, project). The task
brief carries the work: ticket metadata, prior documents, recent
discussion, and exactly one phase instruction chosen from the ticket's
approval state.
"""

from __future__ import annotations

import re

from grove.models import Comment, Document, DocumentType, Persona, Phase, Project, Ticket
from grove.roles import Role

TRUNCATION_MARKER = "\n\n[...truncated]"

_DOC_TITLES = {
    DocumentType.RESEARCH: "Research Document",
    DocumentType.IMPLEMENTATION_PLAN: "Implementation Plan",
    DocumentType.DESIGN: "Design Document",
}


def build_system_prompt(persona: Persona, project: Project, ticket: Ticket, workspace: str) -> str:
    role = persona.role
    lines = [
        f"You are {persona.name}, a {role.spec.label.lower()} working on project \"{project.name}\".",
        f"Workspace: {workspace}",
    ]
    if persona.personality:
        lines += ["", "Personality:", persona.personality]
    if persona.skills:
        lines += ["", "Skills: " + ", ".join(persona.skills)]
    lines += [
        "",
        role.spec.prompt_section,
        "",
        f"## Ticket: {ticket.id} — {ticket.title}",
        f"State: {ticket.state.value}",
        "",
        "## Output",
        "Your entire stdout is captured as the result of this run.",
        "When the task asks for a document, output only the document as markdown,",
        "with no preamble. Otherwise write a focused markdown comment.",
    ]
    return "\n".join(lines)


def _doc_section(doc: Document, truncate_at: int | None) -> list[str]:
    content = doc.content
    if truncate_at is not None and len(content) > truncate_at:
        content = content[:truncate_at] + TRUNCATION_MARKER
    return ["", f"## {_DOC_TITLES[doc.type]} (v{doc.version})", content]


def phase_instruction(ticket: Ticket, role: Role, research_version: int) -> str:
    """One instruction block, chosen by approval state."""
    phase = ticket.phase
    if phase == Phase.RESEARCH:
        if research_version == 1 and role.is_reviewer:
            return (
                "## Your task: review the research\n"
                "Critically review research v1 above. Verify claims against the code, "
                "call out gaps, wrong assumptions and missing risks. Output only your review."
            )
        if research_version >= 2:
            return (
                "## Your task: final research revision\n"
                "Revise the research document to address every point in the review. "
                "Output the complete, final research document."
            )
        return (
            "## Your task: research\n"
            "Investigate the codebase for this ticket and write the research document: "
            "relevant code paths with file references, constraints, risks, and open questions."
        )
    if phase == Phase.PLANNING:
        return (
            "## Your task: implementation plan\n"
            "Using the approved research, write a step-by-step implementation plan: files to "
            "change, the change in each, test strategy, and rollout concerns. When done, state "
            "that the plan is ready for approval."
        )
    return (
        "## Your task: implement\n"
        "Implement the approved plan in the workspace. Make targeted changes, run the tests, "
        "and finish with a summary of what changed. State when all acceptance criteria are met."
    )


def build_task(
    ticket: Ticket,
    persona: Persona,
    documents: list[Document],
    comments: list[Comment],
    research_version: int = 0,
    message: str | None = None,
    truncate_at: int = 3000,
) -> str:
    """Assemble the brief written to task.md.

    Reviewer roles see prior documents in full; everyone else gets them
    truncated at ``truncate_at`` characters.
    """
    sections = [
        f"# Ticket: {ticket.title}",
        f"ID: {ticket.id} | State: {ticket.state.value} | Phase: {ticket.phase.value}",
    ]
    if ticket.description:
        sections += ["", "## Description", ticket.description]
    if ticket.acceptance_criteria:
        sections += ["", "## Acceptance Criteria", ticket.acceptance_criteria]

    limit = None if persona.role.is_reviewer else truncate_at
    for doc in documents:
        sections += _doc_section(doc, limit)

    if comments:
        sections += ["", "## Recent Comments"]
        for c in comments:
            sections.append(f"**{c.author_name}** [{c.kind.value}]:\n{c.body}\n---")

    sections += ["", phase_instruction(ticket, persona.role, research_version)]

    if message:
        sections += [
            "",
            "## New Comment (respond to this)",
            message,
            "",
            f"You are {persona.name} ({persona.role.value}). Address the comment above.",
        ]
    return "\n".join(sections)


# ── Summaries ────────────────────────────────────────────────────────────────

_SUMMARY_RE = re.compile(
    r"^#{1,3}\s*(?:Summary|Overview|Key Findings|TL;?DR)[^\n]*\n+(.*?)(?=\n#{1,3}\s|\n---|\Z)",
    re.IGNORECASE | re.MULTILINE | re.DOTALL,
)


def _first_paragraph(markdown: str) -> str:
    paragraphs: list[str] = []
    buf = ""
    for line in markdown.splitlines():
        if line.startswith("#") or line.startswith("---"):
            if len(buf.strip()) > 40:
                paragraphs.append(buf.strip())
            buf = ""
            continue
        buf += line + " "
    if len(buf.strip()) > 40:
        paragraphs.append(buf.strip())
    return paragraphs[0] if paragraphs else ""


def extract_summary(markdown: str, max_len: int = 500) -> str:
    """Short plain-text summary of a markdown document for a ticket comment."""
    match = _SUMMARY_RE.search(markdown)
    text = match.group(1).strip() if match else ""
    if not text:
        text = _first_paragraph(markdown) or markdown[:max_len]

    text = re.sub(r"\*\*([^*]+)\*\*", r"\1", text)
    text = re.sub(r"\*([^*]+)\*", r"\1", text)
    text = re.sub(r"`([^`]+)`", r"\1", text)
    text = re.sub(r"^\s*[-*]\s+", "• ", text, flags=re.MULTILINE)
    text = re.sub(r"\n+", " ", text).strip()

    if len(text) > max_len:
        truncated = text[:max_len]
        cut = truncated.rfind(". ")
        text = truncated[: cut + 1] if cut > max_len * 0.4 else truncated + "…"
    return text
