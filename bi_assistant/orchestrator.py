"""
Orchestration loop: model call, optional DAX tool round, final answer.

The model may request `execute_dax` once; every requested query is run,
recorded in the learning store and fed back, then exactly one follow-up
call produces the answer. Tool requests in the follow-up are ignored.
"""
import json
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Dict, List, Optional, Tuple
from sqlalchemy.ext.asyncio import AsyncSession

from bi_assistant.learning import format_learning_context, get_working_queries, identify_intent, record_outcome
from bi_assistant.llm import ModelClient, ToolCall
from bi_assistant.powerbi import PowerBIExecutor
from bi_assistant.templates import format_long_date
from bi_assistant.utils import logger

MAX_TOOL_ROUNDS = 1
MAX_TOOL_ROUNDS_CEILING = 3
TOOL_RESULT_ROWS = 20
MODEL_CONTEXT_LIMIT = 6000
LEARNING_EXEMPLARS = 3

APOLOGY = "Desculpe, não consegui processar sua solicitação. Por favor, tente novamente."

PERSONA = """Você é o assistente IA da empresa do usuário, integrado via WhatsApp. Responda de forma concisa e direta.

## REGRAS
- Respostas curtas e objetivas (máximo 500 caracteres)
- Use emojis moderadamente
- Formate valores: R$ 1.234,56
- Se precisar de dados, use a função execute_dax
- Não mencione nomes técnicos de medidas ou tabelas
- Sempre formate a resposta para WhatsApp (use *negrito* e _itálico_)"""

EXECUTE_DAX_TOOL: Dict[str, Any] = {
    "type": "function",
    "function": {
        "name": "execute_dax",
        "description": "Executa uma query DAX no Power BI para buscar dados.",
        "parameters": {
            "type": "object",
            "properties": {
                "query": {"type": "string", "description": "A query DAX a ser executada"},
            },
            "required": ["query"],
        },
    },
}


def build_system_prompt(
    persona: str,
    model_context: Optional[str],
    working_queries: Optional[List[str]],
    today: date,
) -> str:
    sections = [persona.strip()]
    if model_context:
        sections.append(f"## CONTEXTO DO MODELO DE DADOS\n{model_context[:MODEL_CONTEXT_LIMIT]}")
    learning = format_learning_context(list(working_queries or [])[:LEARNING_EXEMPLARS])
    if learning:
        sections.append(learning.strip())
    sections.append(f"## DATA ATUAL\n{format_long_date(today)}")
    return "\n\n".join(sections) + "\n"


@dataclass
class AnswerRequest:
    tenant_id: str
    question: str
    conversation: List[Dict[str, Any]] = field(default_factory=list)
    connection_id: Optional[str] = None
    dataset_id: Optional[str] = None
    system_prompt: str = ""

    @property
    def can_query(self) -> bool:
        return bool(self.connection_id and self.dataset_id)


class Orchestrator:
    def __init__(self, model: ModelClient, executor: PowerBIExecutor, max_tool_rounds: int = MAX_TOOL_ROUNDS):
        if not 1 <= max_tool_rounds <= MAX_TOOL_ROUNDS_CEILING:
            raise ValueError(f"max_tool_rounds must be between 1 and {MAX_TOOL_ROUNDS_CEILING}")
        self.model = model
        self.executor = executor
        self.max_tool_rounds = max_tool_rounds

    async def answer(self, session: AsyncSession, request: AnswerRequest) -> str:
        """Final answer text. Model exhaustion propagates as ExhaustedRetriesError."""
        intent = identify_intent(request.question)
        system = request.system_prompt or build_system_prompt(PERSONA, None, None, date.today())
        if request.dataset_id:
            queries = await get_working_queries(session, request.dataset_id, intent, limit=LEARNING_EXEMPLARS)
            system += format_learning_context(queries)

        messages = list(request.conversation) or [{"role": "user", "content": request.question}]
        tools = [EXECUTE_DAX_TOOL] if request.can_query else None

        reply = await self.model.complete(system, messages, tools=tools)

        rounds = 0
        while tools and reply.wants_tools and reply.tool_calls and rounds < self.max_tool_rounds:
            rounds += 1
            messages.append(reply.as_assistant_turn())
            for call in reply.tool_calls:
                content = await self._run_tool(session, request, intent, call)
                messages.append({"role": "tool", "tool_call_id": call.id, "content": content})
            reply = await self.model.complete(system, messages, tools=tools)

        if reply.wants_tools:
            logger.info("Ignoring tool request after final round", rounds=rounds)

        text = (reply.text or "").strip()
        return text or APOLOGY

    async def _run_tool(self, session: AsyncSession, request: AnswerRequest, intent: str, call: ToolCall) -> str:
        if call.name != EXECUTE_DAX_TOOL["function"]["name"]:
            return f"Erro: ferramenta desconhecida {call.name}"

        query = call.arguments.get("query")
        if not isinstance(query, str) or not query.strip():
            return "Erro: query DAX ausente"

        result = await self.executor.execute(session, request.connection_id, request.dataset_id, query)
        await record_outcome(
            session,
            dataset_id=request.dataset_id,
            tenant_id=request.tenant_id,
            question=request.question,
            intent=intent,
            query=query,
            success=result.success,
            error=result.error,
            execution_time_ms=result.elapsed_ms,
            result_rows=result.row_count if result.success else None,
        )

        if not result.success:
            return f"Erro: {result.error}"
        return json.dumps(result.rows[:TOOL_RESULT_ROWS], ensure_ascii=False, indent=2, default=str)


async def deliver_answer(gateway, speech, instance, phone: str, text: str, prefer_audio: bool = False) -> Tuple[bool, str]:
    """
    Send `text` to `phone`, as a voice note when preferred. Any audio failure
    falls back to a text send. Returns (sent, channel).
    """
    if prefer_audio:
        audio = await speech.synthesize(text)
        if audio:
            if await gateway.send_audio(instance, phone, audio):
                return True, "audio"
            logger.warning("Audio delivery failed, falling back to text", phone=phone)
        else:
            logger.warning("Speech synthesis unavailable, falling back to text", phone=phone)

    sent = await gateway.send_text(instance, phone, text)
    return sent, "text"
