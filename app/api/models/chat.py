# app/api/models/chat.py
from pydantic import BaseModel
from typing import Optional


class ChatResponse(BaseModel):
    """
    Response model for a single agent's answer.
    """
    question: str
    answer: str
    timestamp: str
    type: str = "ai_response"
    mode: str
    agent: Optional[str] = None


class WeatherReport(BaseModel):
    weather: str
    temperature: int
    location: str
    timestamp: str


class WeatherResponse(BaseModel):
    """
    Response model for the paid weather endpoint.
    """
    report: WeatherReport


class HealthResponse(BaseModel):
    status: str
    timestamp: str
