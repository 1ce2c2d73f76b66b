"""
Query learning: remembers which DAX queries worked for which kind of question.

Intent is a deterministic keyword bucket used as a lookup key, so the same
question text must always map to the same intent.
"""
import re
import unicodedata
from typing import List, Optional, Tuple
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from bi_assistant.models import QueryLearningRecord
from bi_assistant.utils import logger, truncate

DEFAULT_INTENT = "outros"

# Ordered: first matching pattern wins
INTENT_PATTERNS: List[Tuple[str, str]] = [
    ("faturamento_filial", r"faturamento.*(filial|loja|unidade)"),
    ("faturamento_vendedor", r"faturamento.*(vendedor|garcom|funcionario)"),
    ("faturamento_produto", r"faturamento.*(produto|item)"),
    ("faturamento_total", r"faturamento|faturou|receita total|vendeu quanto"),
    ("faturamento_filial", r"vendas?.*(filial|loja)"),
    ("faturamento_vendedor", r"vendas?.*(vendedor|garcom|funcionario)"),
    ("faturamento_produto", r"vendas?.*(produto|item)"),
    ("top_vendedores", r"top.*(vendedor|garcom|funcionario)|melhor vendedor|quem (mais )?vendeu"),
    ("top_produtos", r"top.*(produto|item)|produto.*(mais|melhor)"),
    ("top_filiais", r"top.*(filial|loja)|filial.*(mais|melhor)"),
    ("ticket_medio", r"ticket.*medio"),
    ("margem", r"margem|lucro"),
    ("cmv", r"cmv|custo"),
    ("contas_pagar", r"contas?.*(pagar|vencer)|a pagar"),
    ("contas_receber", r"contas?.*receber|a receber|inadimplen"),
    ("saldo", r"saldo|caixa|banco"),
    ("estoque", r"estoque|inventario"),
]

_COMPILED_PATTERNS = [(intent, re.compile(pattern)) for intent, pattern in INTENT_PATTERNS]


def normalize_text(text: str) -> str:
    """Lowercase and strip accents"""
    decomposed = unicodedata.normalize("NFD", text.lower())
    return "".join(ch for ch in decomposed if unicodedata.category(ch) != "Mn")


def identify_intent(question: Optional[str]) -> str:
    if not question:
        return DEFAULT_INTENT
    normalized = normalize_text(question)
    for intent, pattern in _COMPILED_PATTERNS:
        if pattern.search(normalized):
            return intent
    return DEFAULT_INTENT


async def record_outcome(
    session: AsyncSession,
    dataset_id: str,
    tenant_id: str,
    question: str,
    intent: str,
    query: str,
    success: bool,
    error: Optional[str] = None,
    execution_time_ms: Optional[int] = None,
    result_rows: Optional[int] = None,
) -> Optional[QueryLearningRecord]:
    """
    Append one learning record. Bookkeeping failures are logged and never
    propagate into the answer path.
    """
    record = QueryLearningRecord(
        dataset_id=dataset_id,
        tenant_id=tenant_id,
        user_question=truncate(question or "", 500),
        question_intent=intent,
        dax_query=query,
        success=success,
        error_message=truncate(error, 500),
        execution_time_ms=execution_time_ms,
        result_rows=result_rows,
    )
    # A savepoint keeps a failed insert from rolling back the caller's work
    try:
        async with session.begin_nested():
            session.add(record)
    except Exception as e:
        logger.error("Failed to record query outcome",
                     dataset_id=dataset_id,
                     intent=intent,
                     error=str(e))
        return None
    await session.commit()
    return record


async def get_working_queries(
    session: AsyncSession,
    dataset_id: str,
    intent: str,
    limit: int = 3,
) -> List[str]:
    """Distinct successful queries for (dataset, intent), newest first. Lookup failures yield no exemplars."""
    if limit <= 0:
        return []

    statement = (
        select(QueryLearningRecord.dax_query)
        .where(
            QueryLearningRecord.dataset_id == dataset_id,
            QueryLearningRecord.question_intent == intent,
            QueryLearningRecord.success.is_(True),
        )
        .order_by(QueryLearningRecord.created_at.desc(), QueryLearningRecord.id.desc())
        .limit(limit * 5)
    )
    try:
        async with session.begin_nested():
            rows = (await session.execute(statement)).all()
    except Exception as e:
        logger.error("Failed to load working queries",
                     dataset_id=dataset_id,
                     intent=intent,
                     error=str(e))
        return []

    queries: List[str] = []
    for (query,) in rows:
        if query not in queries:
            queries.append(query)
        if len(queries) >= limit:
            break
    return queries


def format_learning_context(queries: List[str]) -> str:
    if not queries:
        return ""
    lines = [
        "",
        "# QUERIES QUE FUNCIONARAM PARA PERGUNTAS SIMILARES",
        "Use estas queries como referência:",
    ]
    lines.extend(f"{i}. {query}" for i, query in enumerate(queries, start=1))
    return "\n".join(lines) + "\n"
