"""
Query execution against Power BI datasets.

Every call exchanges the connection's client credentials for a fresh access
token; tokens are not cached between executions.
"""
import os
import time
import httpx
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from bi_assistant.errors import AssistantError, AuthError, QueryError, TransportError, ValidationError
from bi_assistant.metrics import DAX_EXECUTIONS_TOTAL, timer
from bi_assistant.models import Connection
from bi_assistant.utils import logger, race_with_timeout, with_retry

POWERBI_AUTHORITY = os.getenv("POWERBI_AUTHORITY", "https://login.microsoftonline.com")
POWERBI_API_BASE = os.getenv("POWERBI_API_BASE", "https://api.powerbi.com/v1.0/myorg")
POWERBI_SCOPE = "https://analysis.windows.net/powerbi/api/.default"
DAX_TIMEOUT_SECONDS = float(os.getenv("DAX_TIMEOUT_SECONDS", "20"))
TOKEN_TIMEOUT_SECONDS = float(os.getenv("TOKEN_TIMEOUT_SECONDS", "10"))
TOKEN_MAX_ATTEMPTS = int(os.getenv("TOKEN_MAX_ATTEMPTS", "2"))
TOKEN_RETRY_BASE_SECONDS = float(os.getenv("TOKEN_RETRY_BASE_SECONDS", "0.5"))

ERROR_REASON_LIMIT = 300


@dataclass
class QueryResult:
    success: bool
    rows: List[Dict[str, Any]] = field(default_factory=list)
    error: Optional[str] = None
    error_kind: Optional[str] = None
    elapsed_ms: int = 0

    @property
    def row_count(self) -> int:
        return len(self.rows)


def extract_rows(payload: Any) -> List[Dict[str, Any]]:
    """Pull results[0].tables[0].rows out of an executeQueries response"""
    if not isinstance(payload, dict):
        raise TransportError("Resposta inesperada do Power BI")
    results = payload.get("results") or []
    if not results or not isinstance(results[0], dict):
        return []
    tables = results[0].get("tables") or []
    if not tables or not isinstance(tables[0], dict):
        return []
    rows = tables[0].get("rows") or []
    return [dict(row) for row in rows if isinstance(row, dict)]


def extract_error_reason(response: httpx.Response) -> str:
    """Short reason from an engine error body, never the raw payload"""
    try:
        body = response.json()
    except ValueError:
        return f"HTTP {response.status_code}: {response.text[:ERROR_REASON_LIMIT]}".strip()

    error = body.get("error") if isinstance(body, dict) else None
    if not isinstance(error, dict):
        return f"HTTP {response.status_code}"

    details = (error.get("pbi.error") or {}).get("details") or []
    for detail in details:
        value = (detail.get("detail") or {}).get("value")
        if value:
            return str(value)[:ERROR_REASON_LIMIT]

    message = error.get("message") or error.get("code") or f"HTTP {response.status_code}"
    return str(message)[:ERROR_REASON_LIMIT]


class PowerBIExecutor:
    """Runs DAX queries for a stored connection and classifies failures"""

    def __init__(
        self,
        authority: str = POWERBI_AUTHORITY,
        api_base: str = POWERBI_API_BASE,
        query_timeout: float = DAX_TIMEOUT_SECONDS,
        token_timeout: float = TOKEN_TIMEOUT_SECONDS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.authority = authority.rstrip("/")
        self.api_base = api_base.rstrip("/")
        self.query_timeout = query_timeout
        self.token_timeout = token_timeout
        self.transport = transport

    async def execute(
        self,
        session: AsyncSession,
        connection_id: Optional[str],
        dataset_id: Optional[str],
        query: Optional[str],
    ) -> QueryResult:
        start = time.perf_counter()
        try:
            with timer("dax_execute"):
                rows = await self._execute(session, connection_id, dataset_id, query)
        except AssistantError as e:
            DAX_EXECUTIONS_TOTAL.labels(outcome=e.kind).inc()
            logger.warning("DAX execution failed",
                           connection_id=connection_id,
                           dataset_id=dataset_id,
                           error_kind=e.kind,
                           error=e.message)
            return QueryResult(
                success=False,
                error=e.message,
                error_kind=e.kind,
                elapsed_ms=int((time.perf_counter() - start) * 1000),
            )

        DAX_EXECUTIONS_TOTAL.labels(outcome="success").inc()
        return QueryResult(
            success=True,
            rows=rows,
            elapsed_ms=int((time.perf_counter() - start) * 1000),
        )

    async def _execute(self, session, connection_id, dataset_id, query) -> List[Dict[str, Any]]:
        if not connection_id or not dataset_id:
            raise ValidationError("Conexão ou dataset não configurado")
        if not query or not query.strip():
            raise ValidationError("Query DAX vazia")

        result = await session.execute(select(Connection).where(Connection.id == connection_id))
        connection = result.scalar_one_or_none()
        if connection is None:
            raise ValidationError("Conexão não encontrada")

        async with httpx.AsyncClient(transport=self.transport, timeout=None) as client:
            token = await self._get_access_token(client, connection)
            return await self._run_query(client, token, connection.workspace_id, dataset_id, query)

    @with_retry(max_attempts=TOKEN_MAX_ATTEMPTS, base_seconds=TOKEN_RETRY_BASE_SECONDS, cap_seconds=2.0)
    async def _get_access_token(self, client: httpx.AsyncClient, connection: Connection) -> str:
        url = f"{self.authority}/{connection.directory_tenant_id}/oauth2/v2.0/token"
        try:
            response = await race_with_timeout(
                client.post(url, data={
                    "grant_type": "client_credentials",
                    "client_id": connection.client_id,
                    "client_secret": connection.client_secret,
                    "scope": POWERBI_SCOPE,
                }),
                self.token_timeout,
                label="token exchange",
            )
        except httpx.HTTPError as e:
            raise TransportError(f"Falha de rede na autenticação: {type(e).__name__}") from e

        if response.status_code >= 500:
            raise TransportError(f"Servidor de autenticação indisponível ({response.status_code})")
        if not response.is_success:
            raise AuthError(f"Erro na autenticação ({response.status_code})", status_code=response.status_code)

        try:
            payload = response.json()
        except ValueError:
            raise AuthError("Resposta de autenticação inválida")
        token = payload.get("access_token") if isinstance(payload, dict) else None
        if not token:
            raise AuthError("Resposta de autenticação sem access_token")
        return token

    async def _run_query(self, client, token, workspace_id, dataset_id, query) -> List[Dict[str, Any]]:
        url = f"{self.api_base}/groups/{workspace_id}/datasets/{dataset_id}/executeQueries"
        try:
            response = await race_with_timeout(
                client.post(
                    url,
                    json={
                        "queries": [{"query": query}],
                        "serializerSettings": {"includeNulls": True},
                    },
                    headers={"Authorization": f"Bearer {token}"},
                ),
                self.query_timeout,
                label="DAX query",
            )
        except httpx.HTTPError as e:
            raise TransportError(f"Falha de rede na consulta DAX: {type(e).__name__}") from e

        status = response.status_code
        if status in (401, 403):
            raise AuthError(f"Acesso negado ao dataset ({status})", status_code=status)
        if status == 429 or status >= 500:
            raise TransportError(f"Serviço Power BI indisponível ({status})", status_code=status)
        if not response.is_success:
            raise QueryError(f"Erro DAX: {extract_error_reason(response)}", status_code=status)

        try:
            payload = response.json()
        except ValueError:
            raise TransportError(f"Resposta inválida do Power BI ({status})", status_code=status)
        return extract_rows(payload)
