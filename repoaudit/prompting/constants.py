"""Tier roles and analysis focus used when prompting workers."""

from __future__ import annotations

TIER_ROLES: dict[str, str] = {
    "shape": "structure reviewer",
    "conventions": "senior conventions reviewer",
    "performance": "performance reviewer",
    "security": "security auditor",
    "supabase_deep_dive": "database and backend security auditor",
}

TIER_FOCUS: dict[str, tuple[str, ...]] = {
    "shape": (
        "Folder organization and misplaced files",
        "Dependency hygiene and import consistency",
        "Configuration and environment handling",
        "Naming conventions",
        "Boilerplate, placeholder comments and exposed secrets",
    ),
    "conventions": (
        "Type safety and escape hatches",
        "Error handling and structured logging",
        "Separation of concerns and duplication",
        "Naming and readability",
        "Documentation of complex functions",
    ),
    "performance": (
        "N+1 data fetching and missing caching",
        "Unnecessary re-renders and recomputation",
        "Memory leaks from subscriptions, listeners and timers",
        "Async anti-patterns and race conditions",
        "Bundle size and code splitting",
    ),
    "security": (
        "Authentication and authorization gaps",
        "Injection and unsafe input handling",
        "Secrets committed to source",
        "Insecure defaults and missing access policies",
        "Data exposure through APIs",
    ),
    "supabase_deep_dive": (
        "Row-level security policies and their bypasses",
        "Service-role usage inside server functions",
        "SQL migrations that weaken access control",
        "Edge functions trusting client-supplied identity",
        "Storage bucket exposure",
    ),
}

TIER_CATEGORIES: dict[str, tuple[str, ...]] = {
    "shape": ("maintainability", "best-practices", "security"),
    "conventions": ("maintainability", "best-practices", "performance", "security"),
    "performance": ("performance",),
    "security": ("security",),
    "supabase_deep_dive": ("security", "database"),
}


def default_instruction(tier: str, chunk_name: str) -> str:
    focus = "; ".join(TIER_FOCUS.get(tier, TIER_FOCUS["shape"]))
    return f"Audit the '{chunk_name}' region of the repository as a {TIER_ROLES.get(tier, 'reviewer')}. Focus on: {focus}."


__all__ = ["TIER_CATEGORIES", "TIER_FOCUS", "TIER_ROLES", "default_instruction"]
