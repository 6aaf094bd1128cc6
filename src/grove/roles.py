"""Persona roles and the capabilities each one carries.

Roles are a closed set. Every role maps to exactly one RoleSpec holding
its tool allow-list, prompt section, and whether it reviews other
agents' work. The mapping is checked for completeness at import time.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass

TOOLS_READONLY: tuple[str, ...] = ("Read", "Grep", "Glob", "Bash(git:*)")
TOOLS_FULL: tuple[str, ...] = ("Read", "Grep", "Glob", "Write", "Edit", "Bash")


class Role(str, enum.Enum):
    RESEARCHER = "researcher"
    DEVELOPER = "developer"
    DESIGNER = "designer"
    CRITIC = "critic"
    HACKER = "hacker"
    LEAD = "lead"

    @property
    def spec(self) -> RoleSpec:
        return ROLE_SPECS[self]

    @property
    def tools(self) -> tuple[str, ...]:
        return ROLE_SPECS[self].tools

    @property
    def is_reviewer(self) -> bool:
        return ROLE_SPECS[self].reviewer


@dataclass(frozen=True)
class RoleSpec:
    label: str
    tools: tuple[str, ...]
    prompt_section: str
    reviewer: bool = False

    @property
    def read_only(self) -> bool:
        return self.tools == TOOLS_READONLY


ROLE_SPECS: dict[Role, RoleSpec] = {
    Role.RESEARCHER: RoleSpec(
        label="Researcher",
        tools=TOOLS_READONLY,
        prompt_section=(
            "You investigate the codebase and the problem space. Produce a research "
            "document covering existing code paths, constraints, risks, and open "
            "questions. Do not modify files."
        ),
    ),
    Role.DEVELOPER: RoleSpec(
        label="Developer",
        tools=TOOLS_FULL,
        prompt_section=(
            "You write production code. Plan concretely, implement in small verified "
            "steps, and keep the acceptance criteria in view."
        ),
    ),
    Role.DESIGNER: RoleSpec(
        label="Designer",
        tools=TOOLS_READONLY,
        prompt_section=(
            "You own user-facing design. Describe layout, states, and interactions "
            "precisely enough for a developer to build them. Do not modify files."
        ),
    ),
    Role.CRITIC: RoleSpec(
        label="Critic",
        tools=TOOLS_READONLY,
        prompt_section=(
            "You review other agents' work. Challenge assumptions, point out gaps "
            "and incorrect claims, and verify statements against the code."
        ),
        reviewer=True,
    ),
    Role.HACKER: RoleSpec(
        label="Hacker",
        tools=TOOLS_FULL,
        prompt_section=(
            "You look for the fastest working path and for ways the plan can break. "
            "Probe edge cases and security issues."
        ),
        reviewer=True,
    ),
    Role.LEAD: RoleSpec(
        label="Lead",
        tools=TOOLS_FULL,
        prompt_section=(
            "You coordinate the team. Keep the ticket moving, resolve disagreements, "
            "and answer questions about scope."
        ),
    ),
}

_missing = set(Role) - set(ROLE_SPECS)
if _missing:
    raise RuntimeError(f"Roles without a RoleSpec: {sorted(r.value for r in _missing)}")


# ── Phase routing ────────────────────────────────────────────────────────────

# Roles that take part in broadcast dispatches, keyed by Phase value.
BROADCAST_ROLES: dict[str, frozenset[Role]] = {
    "research": frozenset({Role.RESEARCHER, Role.CRITIC}),
    "planning": frozenset({Role.DEVELOPER, Role.CRITIC, Role.HACKER}),
    "implementation": frozenset({Role.DEVELOPER, Role.HACKER}),
    "review": frozenset(),
}


def research_role_for_version(max_version: int) -> Role:
    """Research alternates author → reviewer → author across versions."""
    return Role.CRITIC if max_version == 1 else Role.RESEARCHER


def target_role(research_approved: bool) -> Role:
    """Default role when a trigger names neither a persona nor a role."""
    return Role.DEVELOPER if research_approved else Role.RESEARCHER


def parse_role(value: str) -> Role | None:
    """Parse a role name, accepting 'manager' as an alias for lead."""
    value = value.strip().lower()
    if value == "manager":
        return Role.LEAD
    try:
        return Role(value)
    except ValueError:
        return None
