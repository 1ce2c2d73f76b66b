"""
Tests for the answer loop and delivery
"""
import pytest
import json
from datetime import date, datetime, timezone
from sqlalchemy import select

from bi_assistant.errors import ExhaustedRetriesError
from bi_assistant.llm import ModelReply, ToolCall
from bi_assistant.models import MessagingInstance, QueryLearningRecord
from bi_assistant.orchestrator import (
    APOLOGY,
    PERSONA,
    AnswerRequest,
    Orchestrator,
    build_system_prompt,
    deliver_answer,
)
from bi_assistant.powerbi import QueryResult

from conftest import FakeExecutor, FakeGateway, FakeModel, FakeSpeech


def dax_call(query, call_id="call_1", name="execute_dax"):
    arguments = {"query": query}
    return ToolCall(id=call_id, name=name, arguments=arguments, raw_arguments=json.dumps(arguments))


def tool_reply(*calls):
    return ModelReply(tool_calls=list(calls), finish_reason="tool_calls")


def request(question="Quanto faturou hoje?", **overrides):
    values = dict(tenant_id="t1", question=question, connection_id="conn-1", dataset_id="ds-1", system_prompt="persona")
    values.update(overrides)
    return AnswerRequest(**values)


class TestAnswer:
    """Test the model call and the single tool round"""

    @pytest.mark.asyncio
    async def test_plain_answer_without_connection(self, db_session):
        """Test no tool is offered when there is nothing to query"""
        model = FakeModel([ModelReply(text="Olá! Como posso ajudar?")])
        orchestrator = Orchestrator(model, FakeExecutor())

        text = await orchestrator.answer(db_session, request("Oi", connection_id=None, dataset_id=None))

        assert text == "Olá! Como posso ajudar?"
        assert model.calls[0]["tools"] is None
        assert model.calls[0]["messages"] == [{"role": "user", "content": "Oi"}]

    @pytest.mark.asyncio
    async def test_tool_round_then_answer(self, db_session):
        """Test the query result is fed back and the follow-up answers"""
        executor = FakeExecutor(QueryResult(success=True, rows=[{"[Total]": 1500}], elapsed_ms=42))
        model = FakeModel([tool_reply(dax_call("EVALUATE ROW(\"Total\", [Faturamento])")),
                           ModelReply(text="Faturamento de hoje: R$ 1.500,00")])

        text = await Orchestrator(model, executor).answer(db_session, request())

        assert text == "Faturamento de hoje: R$ 1.500,00"
        assert executor.calls == [{"connection_id": "conn-1", "dataset_id": "ds-1",
                                   "query": "EVALUATE ROW(\"Total\", [Faturamento])"}]

        follow_up = model.calls[1]["messages"]
        assert follow_up[0] == {"role": "user", "content": "Quanto faturou hoje?"}
        assert follow_up[1]["role"] == "assistant"
        assert follow_up[1]["tool_calls"][0]["id"] == "call_1"
        assert follow_up[2]["role"] == "tool"
        assert follow_up[2]["tool_call_id"] == "call_1"
        assert json.loads(follow_up[2]["content"]) == [{"[Total]": 1500}]

        record = (await db_session.execute(select(QueryLearningRecord))).scalar_one()
        assert record.success is True
        assert record.question_intent == "faturamento_total"
        assert record.execution_time_ms == 42
        assert record.result_rows == 1

    @pytest.mark.asyncio
    async def test_every_tool_call_answered(self, db_session):
        model = FakeModel([tool_reply(dax_call("EVALUATE a", "c1"), dax_call("EVALUATE b", "c2")),
                           ModelReply(text="ok")])

        await Orchestrator(model, FakeExecutor()).answer(db_session, request())

        tool_messages = [m for m in model.calls[1]["messages"] if m["role"] == "tool"]
        assert [m["tool_call_id"] for m in tool_messages] == ["c1", "c2"]

    @pytest.mark.asyncio
    async def test_follow_up_tool_request_ignored(self, db_session):
        """Test only one tool round runs and an empty reply becomes the apology"""
        executor = FakeExecutor()
        model = FakeModel([tool_reply(dax_call("EVALUATE a")), tool_reply(dax_call("EVALUATE b"))])

        text = await Orchestrator(model, executor).answer(db_session, request())

        assert text == APOLOGY
        assert len(model.calls) == 2
        assert len(executor.calls) == 1

    @pytest.mark.asyncio
    async def test_configured_extra_rounds(self, db_session):
        executor = FakeExecutor()
        model = FakeModel([tool_reply(dax_call("EVALUATE a")), tool_reply(dax_call("EVALUATE b")),
                           ModelReply(text="pronto")])

        text = await Orchestrator(model, executor, max_tool_rounds=2).answer(db_session, request())

        assert text == "pronto"
        assert len(executor.calls) == 2

    @pytest.mark.asyncio
    async def test_rows_capped_in_tool_result(self, db_session):
        rows = [{"[Filial]": f"F{n}", "[Valor]": n} for n in range(30)]
        model = FakeModel([tool_reply(dax_call("EVALUATE Filiais")), ModelReply(text="ok")])

        await Orchestrator(model, FakeExecutor(QueryResult(success=True, rows=rows))).answer(db_session, request())

        content = model.calls[1]["messages"][-1]["content"]
        assert len(json.loads(content)) == 20

        record = (await db_session.execute(select(QueryLearningRecord))).scalar_one()
        assert record.result_rows == 30

    @pytest.mark.asyncio
    async def test_failed_query_fed_back_and_recorded(self, db_session):
        failure = QueryResult(success=False, error="Erro DAX: tabela inexistente", error_kind="query")
        model = FakeModel([tool_reply(dax_call("EVALUATE Nada")), ModelReply(text="Não encontrei esses dados.")])

        text = await Orchestrator(model, FakeExecutor(failure)).answer(db_session, request())

        assert text == "Não encontrei esses dados."
        assert model.calls[1]["messages"][-1]["content"] == "Erro: Erro DAX: tabela inexistente"
        record = (await db_session.execute(select(QueryLearningRecord))).scalar_one()
        assert record.success is False
        assert record.error_message == "Erro DAX: tabela inexistente"
        assert record.result_rows is None

    @pytest.mark.asyncio
    async def test_unknown_tool_and_missing_query(self, db_session):
        executor = FakeExecutor()
        bad_calls = tool_reply(
            ToolCall(id="c1", name="send_email", arguments={}),
            ToolCall(id="c2", name="execute_dax", arguments={}),
        )
        model = FakeModel([bad_calls, ModelReply(text="ok")])

        await Orchestrator(model, executor).answer(db_session, request())

        contents = [m["content"] for m in model.calls[1]["messages"] if m["role"] == "tool"]
        assert contents == ["Erro: ferramenta desconhecida send_email", "Erro: query DAX ausente"]
        assert executor.calls == []

    @pytest.mark.asyncio
    async def test_learning_exemplars_in_system_prompt(self, db_session):
        """Test previously working queries for the same intent are offered"""
        db_session.add(QueryLearningRecord(
            dataset_id="ds-1", tenant_id="t1", user_question="faturamento de ontem",
            question_intent="faturamento_total", dax_query="EVALUATE ROW(\"F\", [Faturamento])", success=True,
            created_at=datetime(2026, 10, 15, tzinfo=timezone.utc),
        ))
        await db_session.commit()
        model = FakeModel([ModelReply(text="ok")])

        await Orchestrator(model, FakeExecutor()).answer(db_session, request())

        system = model.calls[0]["system"]
        assert system.startswith("persona")
        assert "# QUERIES QUE FUNCIONARAM PARA PERGUNTAS SIMILARES" in system
        assert "1. EVALUATE ROW(\"F\", [Faturamento])" in system

    @pytest.mark.asyncio
    async def test_model_failure_propagates(self, db_session):
        model = FakeModel([ExhaustedRetriesError("down", attempts=4)])

        with pytest.raises(ExhaustedRetriesError):
            await Orchestrator(model, FakeExecutor()).answer(db_session, request())

    def test_tool_round_bounds(self):
        with pytest.raises(ValueError):
            Orchestrator(FakeModel(), FakeExecutor(), max_tool_rounds=0)
        with pytest.raises(ValueError):
            Orchestrator(FakeModel(), FakeExecutor(), max_tool_rounds=4)


class TestSystemPrompt:
    def test_sections_in_order(self):
        prompt = build_system_prompt(PERSONA, "Tabela Vendas", ["EVALUATE a"], date(2026, 10, 16))

        context_at = prompt.index("## CONTEXTO DO MODELO DE DADOS")
        learning_at = prompt.index("# QUERIES QUE FUNCIONARAM")
        date_at = prompt.index("## DATA ATUAL")
        assert prompt.index("## REGRAS") < context_at < learning_at < date_at
        assert "sexta-feira, 16 de outubro de 2026" in prompt

    def test_model_context_truncated(self):
        prompt = build_system_prompt("p", "x" * 10000, None, date(2026, 10, 16))
        assert "x" * 6000 in prompt
        assert "x" * 6001 not in prompt

    def test_optional_sections_omitted(self):
        prompt = build_system_prompt("p", None, [], date(2026, 10, 16))
        assert "CONTEXTO" not in prompt
        assert "QUERIES" not in prompt


INSTANCE = MessagingInstance(id="inst-1", instance_name="empresa", api_url="https://evo.test", api_key="k")


class TestDeliverAnswer:
    @pytest.mark.asyncio
    async def test_text_by_default(self):
        gateway, speech = FakeGateway(), FakeSpeech()

        assert await deliver_answer(gateway, speech, INSTANCE, "5511", "oi") == (True, "text")
        assert speech.synthesized == []

    @pytest.mark.asyncio
    async def test_audio_when_preferred(self):
        gateway = FakeGateway()

        assert await deliver_answer(gateway, FakeSpeech(), INSTANCE, "5511", "oi", prefer_audio=True) == (True, "audio")
        assert gateway.texts == []

    @pytest.mark.asyncio
    async def test_synthesis_failure_falls_back_to_text(self):
        gateway = FakeGateway()

        result = await deliver_answer(gateway, FakeSpeech(audio=None), INSTANCE, "5511", "oi", prefer_audio=True)

        assert result == (True, "text")
        assert gateway.audios == []

    @pytest.mark.asyncio
    async def test_text_failure_reported(self):
        assert await deliver_answer(FakeGateway(text_ok=False), FakeSpeech(), INSTANCE, "5511", "oi") == (False, "text")
