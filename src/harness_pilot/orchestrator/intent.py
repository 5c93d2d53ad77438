"""Intent classification: free text in, ``ActionPlan`` out.

Classifiers never raise. Any failure degrades to the default plan, which
forwards the raw message to the lowest-priority harness.
"""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Sequence
from typing import Any, Protocol

import httpx

from harness_pilot.orchestrator.models import ActionPlan, HarnessDescriptor
from harness_pilot.orchestrator.routing import default_harness, normalize_harness_id

logger = logging.getLogger(__name__)

BUILTIN_TOOLS = ("status", "help")

DEFAULT_GUARD_TERMS = (
    "delete",
    "drop",
    "force push",
    "push --force",
    "rm -rf",
    "reset --hard",
    "deploy",
)

_JSON_OBJECT_RE = re.compile(r"\{.*\}", re.DOTALL)


class IntentClassifier(Protocol):
    async def classify(self, text: str) -> ActionPlan: ...


def default_plan(message: str, descriptors: Sequence[HarnessDescriptor]) -> ActionPlan:
    harness_id = default_harness(descriptors)
    return ActionPlan(
        target_harness=harness_id,
        args=(message,),
        explanation=f"Forwarding to {harness_id} for processing",
        prompt=message,
    )


def parse_action_plan(
    raw: str,
    message: str,
    descriptors: Sequence[HarnessDescriptor],
) -> ActionPlan:
    """Parse a model reply into a plan, falling back to the default plan.

    Accepts either ``tool`` or ``target_harness`` as the target key and
    tolerates prose or code fences around the JSON object.
    """

    match = _JSON_OBJECT_RE.search(raw or "")
    if match is None:
        logger.warning("Classifier reply has no JSON object; using default plan")
        return default_plan(message, descriptors)
    try:
        payload = json.loads(match.group(0))
    except json.JSONDecodeError as error:
        logger.warning("Classifier reply is not valid JSON: %s", error)
        return default_plan(message, descriptors)
    if not isinstance(payload, dict):
        return default_plan(message, descriptors)

    target = normalize_harness_id(str(payload.get("tool") or payload.get("target_harness") or ""))
    known = {descriptor.harness_id for descriptor in descriptors}
    if target not in known and target not in BUILTIN_TOOLS:
        logger.warning("Classifier chose unknown target %r; using default plan", target)
        return default_plan(message, descriptors)

    args = _coerce_args(payload.get("args"), message)
    explanation = str(payload.get("explanation") or f"Forwarding to {target}")
    return ActionPlan(
        target_harness=target,
        args=args,
        explanation=explanation,
        prompt=message,
        requires_confirmation=bool(payload.get("requires_confirmation", False)),
    )


def _coerce_args(value: Any, message: str) -> tuple[str, ...]:
    if isinstance(value, str) and value.strip():
        return (value,)
    if isinstance(value, list):
        args = tuple(str(item) for item in value if str(item).strip())
        if args:
            return args
    return (message,)


def _contains_term(text: str, term: str) -> bool:
    pattern = r"(?<!\w)" + re.escape(term.lower()) + r"(?!\w)"
    return re.search(pattern, text) is not None


class TermMatchClassifier:
    """Offline classifier scoring trigger and avoid terms per harness."""

    def __init__(
        self,
        descriptors: Sequence[HarnessDescriptor],
        *,
        guard_terms: Sequence[str] = DEFAULT_GUARD_TERMS,
    ) -> None:
        self.descriptors = tuple(descriptors)
        self.guard_terms = tuple(term.lower() for term in guard_terms if term.strip())

    async def classify(self, text: str) -> ActionPlan:
        return self.classify_sync(text)

    def classify_sync(self, text: str) -> ActionPlan:
        message = text.strip()
        lowered = message.lower()
        for tool in BUILTIN_TOOLS:
            if lowered == tool:
                return ActionPlan(
                    target_harness=tool,
                    args=(),
                    explanation=f"Built-in {tool}",
                    prompt=message,
                )

        scores: dict[str, int] = {}
        for descriptor in self.descriptors:
            hits = sum(1 for term in descriptor.trigger_terms if _contains_term(lowered, term))
            misses = sum(1 for term in descriptor.avoid_terms if _contains_term(lowered, term))
            scores[descriptor.harness_id] = hits - misses

        plan = default_plan(message, self.descriptors)
        best = max(scores.values(), default=0)
        leaders = [harness_id for harness_id, score in scores.items() if score == best]
        if best > 0 and len(leaders) == 1:
            plan = ActionPlan(
                target_harness=leaders[0],
                args=(message,),
                explanation=f"Matched {leaders[0]} triggers",
                prompt=message,
            )

        guarded = [term for term in self.guard_terms if _contains_term(lowered, term)]
        if guarded:
            logger.info("Request matched guard terms: %s", ", ".join(guarded))
            plan = ActionPlan(
                target_harness=plan.target_harness,
                args=plan.args,
                explanation=plan.explanation,
                prompt=plan.prompt,
                requires_confirmation=True,
            )
        return plan


def build_system_prompt(descriptors: Sequence[HarnessDescriptor]) -> str:
    lines = [
        "You route coding requests to the appropriate tool.",
        "",
        "Available tools:",
    ]
    for descriptor in descriptors:
        triggers = ", ".join(descriptor.trigger_terms) or "general coding tasks"
        lines.append(f"- {descriptor.harness_id}: {triggers}")
    lines.extend(
        [
            "- status: check the status of recent tasks",
            "- help: show available commands",
            "",
            "Respond ONLY with a JSON object:",
            '{"tool": "<tool>", "args": ["instruction"], "explanation": "...",'
            ' "requires_confirmation": false}',
            "Set requires_confirmation to true for destructive or irreversible actions.",
        ],
    )
    return "\n".join(lines)


class ChatCompletionsClassifier:
    """Hosted classifier speaking the OpenAI-compatible chat-completions API."""

    def __init__(  # noqa: PLR0913
        self,
        descriptors: Sequence[HarnessDescriptor],
        *,
        api_key: str,
        model: str,
        base_url: str,
        timeout_seconds: float = 30.0,
        guard_classifier: TermMatchClassifier | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.descriptors = tuple(descriptors)
        self.api_key = api_key
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.timeout = httpx.Timeout(timeout_seconds, connect=10.0)
        self.guard_classifier = guard_classifier
        self._transport = transport

    async def classify(self, text: str) -> ActionPlan:
        message = text.strip()
        try:
            raw = await self._complete(message)
        except httpx.HTTPError as error:
            logger.warning("Intent classification request failed: %s", error)
            return default_plan(message, self.descriptors)
        except (KeyError, IndexError, TypeError, ValueError) as error:
            logger.warning("Unexpected classifier response shape: %s", error)
            return default_plan(message, self.descriptors)
        plan = parse_action_plan(raw, message, self.descriptors)
        if self.guard_classifier is not None and not plan.requires_confirmation:
            guarded = await self.guard_classifier.classify(message)
            if guarded.requires_confirmation:
                plan = ActionPlan(
                    target_harness=plan.target_harness,
                    args=plan.args,
                    explanation=plan.explanation,
                    prompt=plan.prompt,
                    requires_confirmation=True,
                )
        return plan

    async def _complete(self, message: str) -> str:
        body = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": build_system_prompt(self.descriptors)},
                {"role": "user", "content": message},
            ],
            "temperature": 0.3,
            "max_tokens": 500,
        }
        headers = {"Authorization": f"Bearer {self.api_key}"}
        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            response = await client.post(
                f"{self.base_url}/chat/completions",
                json=body,
                headers=headers,
            )
            response.raise_for_status()
            payload = response.json()
        return str(payload["choices"][0]["message"]["content"] or "")
