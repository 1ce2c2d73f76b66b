from pydantic import BaseModel, ConfigDict
from typing import List, Optional, Dict, Any

class DrainResponse(BaseModel):
    """Response model for the queue drain endpoint"""
    processed: int
    succeeded: int
    failed: int

    model_config = ConfigDict(
        json_schema_extra={
            "example": {"processed": 3, "succeeded": 2, "failed": 1}
        }
    )

class AlertCheckResponse(BaseModel):
    """Response model for the alert check endpoint"""
    checked: int
    triggered: int
    time: Optional[str] = None  # HH:MM in the alert time zone
    results: List[Dict[str, Any]]

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "checked": 4,
                "triggered": 1,
                "time": "09:00",
                "results": [
                    {"alert": "Faturamento diário", "sent": 2, "valor": "R$ 1.500,00"},
                    {"alert": "Estoque baixo", "error": "Erro DAX: coluna inexistente"}
                ]
            }
        }
    )

class TriggerResponse(BaseModel):
    """Response model for the manual alert trigger endpoint"""
    alert: str
    success: bool
    sent: int
    valor: Optional[str] = None
    message: Optional[str] = None
    error: Optional[str] = None

class WebhookResponse(BaseModel):
    """Response model for the messaging webhook"""
    status: str
    reason: Optional[str] = None
    queue_id: Optional[int] = None

class HealthResponse(BaseModel):
    """Response model for the health endpoint"""
    status: str
    components: Dict[str, Dict[str, Any]]
    latency_ms: float
