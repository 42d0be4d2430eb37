"""
Reconciliation oracles: the external matcher that pairs source and store identifiers.

The engine only depends on ``ReconciliationOracle``. ``OpenAIReconciliationOracle``
asks a chat model for a ``{"mapper": ..., "missing": ...}`` JSON object; tests
substitute a deterministic stub.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
import json
import logging
import re

from openai import AsyncOpenAI, OpenAIError

from core.config import settings
from core.exceptions import MalformedOracleResponseError, OracleUnavailableError
from schemas.reconciliation import Cardinality, ReconciliationPolicy

logger = logging.getLogger(__name__)

_FENCE_RE = re.compile(r"```(?:json)?\s*([\s\S]*?)\s*```")


@dataclass
class OracleRequest:
    """Everything the oracle needs to produce one mapping"""
    entity_type: str
    source_items: List[Dict[str, Any]]
    target_items: List[Dict[str, Any]]
    policy: ReconciliationPolicy = field(default_factory=ReconciliationPolicy)


class ReconciliationOracle(ABC):
    """
    Black-box matcher.

    ``reconcile`` returns the oracle's raw JSON object, either
    ``{"mapper": {...}, "missing": [...]}`` or ``{"error": ..., "message": ...}``.
    Shape validation is the engine's job.

    Raises:
        OracleUnavailableError: The oracle could not be reached
        MalformedOracleResponseError: The answer is not a JSON object
    """

    @abstractmethod
    async def reconcile(self, request: OracleRequest) -> Dict[str, Any]:
        pass


SYSTEM_PROMPT = """You reconcile records between an external API and a local database.

Rules:
1. Match every API item to a database item using all available fields (names, codes, numeric values, descriptions). Prefer exact matches, then clear semantic matches.
2. Numeric values may use different scales (21.0 in the API can be 0.21 in the database).
3. Answer with ONE JSON object and nothing else: {"mapper": {...}, "missing": [...]}
4. "mapper" keys are the API items' primary ids as strings; values are the matching database primary ids as numbers.
5. "missing" lists API items with no database counterpart, written with the EXACT field names of the database items and without id fields.
6. If you cannot produce a mapping, answer {"error": "ERROR_CODE", "message": "description"}."""


def build_instructions(policy: ReconciliationPolicy) -> str:
    """Render policy options as extra instructions for the oracle"""
    parts = []

    if policy.cardinality == Cardinality.MANY_TO_ONE:
        parts.append(
            "MANY-TO-ONE ALLOWED: several API ids may map to the SAME database id "
            "when they represent the same entity, e.g. {\"1\": 2, \"5\": 2}."
        )
    else:
        parts.append("ONE-TO-ONE: each database id may appear at most once in \"mapper\".")

    if policy.require_complete:
        parts.append(
            "COMPLETE MAPPING REQUIRED: \"missing\" must be empty; every API item needs a "
            "database counterpart, chosen by closest meaning if necessary."
        )

    if policy.context:
        parts.append(
            "RELATED MAPPINGS: when a \"missing\" record needs a reference to another entity, "
            "translate the API id through these mappers and store the database id:\n"
            + json.dumps(policy.context, indent=2, sort_keys=True)
        )

    return "\n\n".join(parts)


def build_user_prompt(request: OracleRequest) -> str:
    return (
        f"Reconcile {request.entity_type} between these two datasets.\n\n"
        f"API items:\n{json.dumps(request.source_items, indent=2, default=str)}\n\n"
        f"Database items:\n{json.dumps(request.target_items, indent=2, default=str)}\n\n"
        f"{build_instructions(request.policy)}\n\n"
        "Respond with the JSON object only."
    )


def parse_oracle_content(content: str) -> Dict[str, Any]:
    """
    Parse the oracle's text answer into a JSON object.

    Markdown code fences around the JSON are tolerated.

    Raises:
        MalformedOracleResponseError: Not parseable, or not an object
    """
    text = (content or "").strip()
    fenced = _FENCE_RE.search(text)
    if fenced:
        text = fenced.group(1)

    try:
        result = json.loads(text)
    except json.JSONDecodeError as e:
        raise MalformedOracleResponseError(
            "Oracle answer is not valid JSON",
            context={"content": text[:500]},
            original_exception=e
        )

    if not isinstance(result, dict):
        raise MalformedOracleResponseError(
            "Oracle answer is not a JSON object",
            context={"content": text[:500]}
        )

    return result


class OpenAIReconciliationOracle(ReconciliationOracle):
    """Oracle backed by an OpenAI chat model"""

    def __init__(
        self,
        client: Optional[AsyncOpenAI] = None,
        model: Optional[str] = None,
        timeout: Optional[float] = None
    ):
        self.model = model or settings.ORACLE_MODEL
        self.client = client or AsyncOpenAI(
            api_key=settings.OPENAI_API_KEY,
            timeout=timeout or settings.ORACLE_TIMEOUT_SECONDS
        )

    async def reconcile(self, request: OracleRequest) -> Dict[str, Any]:
        logger.info(f"→ Requesting oracle mapping for {request.entity_type} ({self.model})")

        try:
            response = await self.client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": SYSTEM_PROMPT},
                    {"role": "user", "content": build_user_prompt(request)},
                ],
                response_format={"type": "json_object"},
            )
        except OpenAIError as e:
            raise OracleUnavailableError(
                f"Oracle request failed for {request.entity_type}",
                context={"entity_type": request.entity_type, "model": self.model},
                original_exception=e
            )

        if not response.choices:
            raise MalformedOracleResponseError(
                "Oracle returned no choices",
                context={"entity_type": request.entity_type}
            )

        content = response.choices[0].message.content or ""
        logger.debug(f"Oracle raw answer for {request.entity_type}: {content}")

        return parse_oracle_content(content)
