"""Harness descriptors and fallback-chain resolution."""

from __future__ import annotations

from collections.abc import Iterable, Sequence

from harness_pilot.orchestrator.models import HarnessDescriptor

SUPPORTED_HARNESSES = ("claude", "gemini", "copilot")

DEFAULT_HARNESS_PRIORITIES = {"claude": 1, "gemini": 2, "copilot": 3}

DEFAULT_TRIGGER_TERMS: dict[str, tuple[str, ...]] = {
    "claude": ("refactor", "implement", "fix", "bug", "architecture", "generate"),
    "gemini": ("explain", "review", "document", "docs", "summarize", "why"),
    "copilot": ("git", "github", "pull request", "pr", "commit", "branch"),
}

DEFAULT_AVOID_TERMS: dict[str, tuple[str, ...]] = {
    "claude": (),
    "gemini": ("refactor", "rewrite"),
    "copilot": ("explain", "refactor"),
}


def default_descriptors() -> tuple[HarnessDescriptor, ...]:
    return tuple(
        HarnessDescriptor(
            harness_id=harness_id,
            fallback_priority=priority,
            trigger_terms=DEFAULT_TRIGGER_TERMS[harness_id],
            avoid_terms=DEFAULT_AVOID_TERMS[harness_id],
        )
        for harness_id, priority in DEFAULT_HARNESS_PRIORITIES.items()
    )


def ordered_by_priority(
    descriptors: Iterable[HarnessDescriptor],
) -> list[HarnessDescriptor]:
    """Lower ``fallback_priority`` first; ties broken by id for determinism."""

    return sorted(descriptors, key=lambda item: (item.fallback_priority, item.harness_id))


def resolve_fallback_chain(
    target_harness: str,
    descriptors: Sequence[HarnessDescriptor],
) -> list[str]:
    """Return harness ids in the order dispatch should try them.

    The plan's target comes first, then every other known harness in
    ascending priority. An unknown target is still tried first so the
    availability oracle can report why it was skipped.
    """

    target = normalize_harness_id(target_harness)
    chain = [target] if target else []
    for descriptor in ordered_by_priority(descriptors):
        if descriptor.harness_id not in chain:
            chain.append(descriptor.harness_id)
    return chain


def default_harness(descriptors: Sequence[HarnessDescriptor]) -> str:
    """Harness used for ambiguous requests: the lowest fallback priority."""

    ordered = ordered_by_priority(descriptors)
    if not ordered:
        raise ValueError("At least one harness descriptor is required")
    return ordered[0].harness_id


def parse_harness_priorities(raw: str) -> dict[str, int]:
    """Parse ``claude:1,gemini:2`` into a priority map."""

    priorities: dict[str, int] = {}
    for part in raw.split(","):
        token = part.strip()
        if not token:
            continue
        if ":" not in token:
            raise ValueError(
                f"Invalid harness priority entry: {token!r}. "
                "Expected format '<harness>:<priority>'.",
            )
        harness_id, priority_raw = token.rsplit(":", 1)
        harness_id = normalize_harness_id(harness_id)
        if not harness_id:
            raise ValueError(f"Invalid harness priority entry: {token!r} (empty harness id)")
        try:
            priorities[harness_id] = int(priority_raw.strip())
        except ValueError as error:
            raise ValueError(
                f"Invalid priority for harness {harness_id!r}: {priority_raw.strip()!r}",
            ) from error
    return priorities


def normalize_harness_id(value: str) -> str:
    return value.strip().lower()
