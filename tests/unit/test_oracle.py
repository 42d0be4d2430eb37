"""
Unit tests for the OpenAI-backed reconciliation oracle
"""

import json
import pytest
from unittest.mock import AsyncMock, MagicMock
from openai import OpenAIError
from core.exceptions import MalformedOracleResponseError, OracleUnavailableError
from migration.reconciliation.oracle import (
    OpenAIReconciliationOracle,
    OracleRequest,
    build_instructions,
    build_user_prompt,
    parse_oracle_content,
)
from schemas.reconciliation import Cardinality, ReconciliationPolicy


def completion(content):
    response = MagicMock()
    response.choices = [MagicMock()]
    response.choices[0].message.content = content
    return response


def make_oracle(create):
    client = MagicMock()
    client.chat.completions.create = create
    return OpenAIReconciliationOracle(client=client, model="test-model")


REQUEST = OracleRequest(
    entity_type="tax",
    source_items=[{"id": 1, "nombre": "IVA 21"}],
    target_items=[{"id_tipo_iva": 3, "porcentaje": 0.21}],
)


class TestOpenAIReconciliationOracle:
    """Test request building and answer parsing"""

    @pytest.mark.asyncio
    async def test_returns_parsed_json(self):
        create = AsyncMock(return_value=completion('{"mapper": {"1": 3}, "missing": []}'))
        oracle = make_oracle(create)

        result = await oracle.reconcile(REQUEST)

        assert result == {"mapper": {"1": 3}, "missing": []}
        kwargs = create.await_args.kwargs
        assert kwargs["model"] == "test-model"
        assert kwargs["response_format"] == {"type": "json_object"}
        assert "IVA 21" in kwargs["messages"][1]["content"]

    @pytest.mark.asyncio
    async def test_client_error_is_unavailable(self):
        oracle = make_oracle(AsyncMock(side_effect=OpenAIError("connection refused")))

        with pytest.raises(OracleUnavailableError):
            await oracle.reconcile(REQUEST)

    @pytest.mark.asyncio
    async def test_no_choices_is_malformed(self):
        response = MagicMock()
        response.choices = []
        oracle = make_oracle(AsyncMock(return_value=response))

        with pytest.raises(MalformedOracleResponseError):
            await oracle.reconcile(REQUEST)


class TestParseOracleContent:
    def test_strips_code_fences(self):
        content = '```json\n{"mapper": {}, "missing": []}\n```'

        assert parse_oracle_content(content) == {"mapper": {}, "missing": []}

    @pytest.mark.parametrize("content", ["", "not json", "[1, 2]", None])
    def test_rejects_non_objects(self, content):
        with pytest.raises(MalformedOracleResponseError):
            parse_oracle_content(content)


class TestInstructions:
    def test_many_to_one_and_complete(self):
        text = build_instructions(
            ReconciliationPolicy(cardinality=Cardinality.MANY_TO_ONE, require_complete=True)
        )

        assert "MANY-TO-ONE" in text
        assert "COMPLETE MAPPING REQUIRED" in text

    def test_one_to_one_default(self):
        assert "ONE-TO-ONE" in build_instructions(ReconciliationPolicy())

    def test_context_mappings_rendered(self):
        policy = ReconciliationPolicy(context={"tax": {"1": 3}})
        request = OracleRequest("product", [{"id": 5}], [], policy)

        prompt = build_user_prompt(request)

        assert json.dumps({"tax": {"1": 3}}, indent=2, sort_keys=True) in prompt
        assert "Reconcile product" in prompt
