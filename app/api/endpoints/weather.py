# app/api/endpoints/weather.py
from datetime import datetime, timezone
from fastapi import APIRouter
import logging

from app.api.models.chat import WeatherReport, WeatherResponse

router = APIRouter()
logger = logging.getLogger(__name__)


@router.get("/weather", response_model=WeatherResponse)
def get_weather() -> WeatherResponse:
    """
    Returns the weather report.

    Priced route: the payment gate has verified (and settled) the payment
    before this handler runs.
    """
    logger.info("Serving weather data to paid request")
    return WeatherResponse(
        report=WeatherReport(
            weather="sunny",
            temperature=70,
            location="Test City",
            timestamp=datetime.now(timezone.utc).isoformat(),
        )
    )
