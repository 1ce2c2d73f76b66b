"""
Tests for the query learning store
"""
import pytest
from datetime import datetime, timedelta, timezone
from sqlalchemy import select, text

from bi_assistant.learning import (
    DEFAULT_INTENT,
    format_learning_context,
    get_working_queries,
    identify_intent,
    record_outcome,
)
from bi_assistant.models import QueryLearningRecord, QueueItem


class TestIdentifyIntent:
    """Test deterministic keyword bucketing"""

    def test_revenue_by_branch(self):
        assert identify_intent("Qual o faturamento por filial?") == "faturamento_filial"

    def test_accents_and_case_ignored(self):
        assert identify_intent("TICKET MÉDIO de ontem") == "ticket_medio"
        assert identify_intent("ticket medio de ontem") == "ticket_medio"

    def test_first_pattern_wins(self):
        """Test revenue questions are not bucketed as top sellers"""
        assert identify_intent("faturamento do melhor vendedor") == "faturamento_vendedor"

    def test_total_revenue(self):
        assert identify_intent("quanto faturou hoje") == "faturamento_total"

    def test_unknown_question(self):
        assert identify_intent("bom dia, tudo bem?") == DEFAULT_INTENT
        assert identify_intent("") == DEFAULT_INTENT
        assert identify_intent(None) == DEFAULT_INTENT

    def test_same_text_same_intent(self):
        question = "Quais contas a pagar vencem esta semana?"
        assert identify_intent(question) == identify_intent(question) == "contas_pagar"


async def add_record(session, query, success=True, intent="faturamento_total", dataset_id="ds-1", age_minutes=0):
    session.add(QueryLearningRecord(
        dataset_id=dataset_id,
        tenant_id="t1",
        user_question="faturamento",
        question_intent=intent,
        dax_query=query,
        success=success,
        created_at=datetime(2026, 10, 16, 12, 0, tzinfo=timezone.utc) - timedelta(minutes=age_minutes),
    ))
    await session.commit()


class TestWorkingQueries:
    @pytest.mark.asyncio
    async def test_only_successes_newest_first(self, db_session):
        await add_record(db_session, "EVALUATE old", age_minutes=30)
        await add_record(db_session, "EVALUATE broken", success=False, age_minutes=20)
        await add_record(db_session, "EVALUATE new", age_minutes=10)

        queries = await get_working_queries(db_session, "ds-1", "faturamento_total")

        assert queries == ["EVALUATE new", "EVALUATE old"]

    @pytest.mark.asyncio
    async def test_distinct_and_limited(self, db_session):
        """Test repeated successes are listed once and the limit holds"""
        await add_record(db_session, "EVALUATE a", age_minutes=1)
        await add_record(db_session, "EVALUATE a", age_minutes=2)
        await add_record(db_session, "EVALUATE b", age_minutes=3)
        await add_record(db_session, "EVALUATE c", age_minutes=4)
        await add_record(db_session, "EVALUATE d", age_minutes=5)

        queries = await get_working_queries(db_session, "ds-1", "faturamento_total", limit=3)

        assert queries == ["EVALUATE a", "EVALUATE b", "EVALUATE c"]

    @pytest.mark.asyncio
    async def test_scoped_to_dataset_and_intent(self, db_session):
        await add_record(db_session, "EVALUATE other_ds", dataset_id="ds-2")
        await add_record(db_session, "EVALUATE other_intent", intent="estoque")

        assert await get_working_queries(db_session, "ds-1", "faturamento_total") == []

    @pytest.mark.asyncio
    async def test_unreadable_store_yields_nothing(self, db_session):
        await db_session.execute(text("DROP TABLE query_learning"))

        assert await get_working_queries(db_session, "ds-1", "faturamento_total") == []


class TestRecordOutcome:
    @pytest.mark.asyncio
    async def test_record_written(self, db_session):
        record = await record_outcome(
            db_session, "ds-1", "t1", "faturamento de hoje", "faturamento_total",
            "EVALUATE x", success=False, error="E" * 900, execution_time_ms=12, result_rows=0,
        )

        assert record is not None
        stored = (await db_session.execute(select(QueryLearningRecord))).scalar_one()
        assert stored.success is False
        assert len(stored.error_message) == 500
        assert stored.execution_time_ms == 12

    @pytest.mark.asyncio
    async def test_store_failure_swallowed(self, db_session):
        """Test a failed insert neither raises nor discards the caller's pending work"""
        item = QueueItem(tenant_id="t1", phone_number="55", message_content="q", conversation=[])
        db_session.add(item)
        await db_session.flush()
        await db_session.execute(text("DROP TABLE query_learning"))

        record = await record_outcome(db_session, "ds-1", "t1", "q", "outros", "EVALUATE x", success=True)

        assert record is None
        assert item.phone_number == "55"
        await db_session.commit()
        stored = (await db_session.execute(select(QueueItem))).scalar_one()
        assert stored.id == item.id


class TestLearningContext:
    def test_empty_list_adds_nothing(self):
        assert format_learning_context([]) == ""

    def test_numbered_exemplars(self):
        text = format_learning_context(["EVALUATE a", "EVALUATE b"])
        assert "# QUERIES QUE FUNCIONARAM PARA PERGUNTAS SIMILARES" in text
        assert "1. EVALUATE a" in text
        assert "2. EVALUATE b" in text
