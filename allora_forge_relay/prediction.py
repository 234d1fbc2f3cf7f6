"""Model webhook client and prediction validation."""

from __future__ import annotations

import base64
import binascii
import logging
from decimal import Decimal, InvalidOperation
from typing import Any, List, Mapping, Optional, Sequence

import aiohttp

from .errors import InvalidModelOutput, SkipSubmission, WebhookContractError
from .models import ForecastEntry, WorkerPrediction

logger = logging.getLogger(__name__)

__all__ = ["MAX_ABS_VALUE", "normalise_value", "parse_worker_response", "fetch_prediction", "PredictionClient"]

MAX_ABS_VALUE = Decimal("1e22")


def normalise_value(raw: Any, policy: str = "throw", field: str = "value") -> str:
    """Return ``raw`` as a plain decimal string.

    Values that are not finite numbers, or whose magnitude exceeds
    :data:`MAX_ABS_VALUE`, are handled by ``policy``: ``throw`` raises
    :class:`InvalidModelOutput`, ``skip`` raises :class:`SkipSubmission` and
    ``zero`` substitutes ``"0"``.
    """

    value: Optional[Decimal] = None
    if not isinstance(raw, bool) and isinstance(raw, (int, float, str, Decimal)):
        try:
            value = Decimal(str(raw).strip())
        except InvalidOperation:
            value = None
    if value is not None and value.is_finite() and abs(value) <= MAX_ABS_VALUE:
        text = format(value.normalize(), "f")
        return "0" if text in ("-0", "") else text

    message = f"{field} {raw!r} is not a finite decimal within ±{MAX_ABS_VALUE:E}"
    if policy == "skip":
        logger.warning("Skipping submission: %s", message)
        raise SkipSubmission(message)
    if policy == "zero":
        logger.warning("Substituting 0: %s", message)
        return "0"
    raise InvalidModelOutput(message)


def parse_worker_response(data: Any, policy: str = "throw") -> WorkerPrediction:
    if not isinstance(data, Mapping):
        raise WebhookContractError(f"Webhook response must be a JSON object, got {type(data).__name__}")

    inference = data.get("inferenceValue")
    inference_value = normalise_value(inference, policy, "inferenceValue") if inference is not None else None

    raw_forecasts = data.get("forecasts")
    if raw_forecasts is None:
        raw_forecasts = []
    if not isinstance(raw_forecasts, list):
        raise WebhookContractError("forecasts must be a list")
    forecasts: List[ForecastEntry] = []
    for index, entry in enumerate(raw_forecasts):
        if not isinstance(entry, Mapping):
            raise WebhookContractError(f"forecasts[{index}] must be an object")
        address = entry.get("workerAddress")
        if not isinstance(address, str) or not address:
            raise WebhookContractError(f"forecasts[{index}].workerAddress is missing")
        value = normalise_value(entry.get("forecastedValue"), policy, f"forecasts[{index}].forecastedValue")
        forecasts.append(ForecastEntry(worker_address=address, forecasted_value=value))

    if inference_value is None and not forecasts:
        raise WebhookContractError("Webhook response contains neither inferenceValue nor forecasts")

    extra_data = None
    raw_extra = data.get("extraData")
    if raw_extra not in (None, ""):
        if not isinstance(raw_extra, str):
            raise WebhookContractError("extraData must be a base64 string")
        try:
            extra_data = base64.b64decode(raw_extra, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise WebhookContractError(f"extraData is not valid base64: {exc}") from exc

    proof = data.get("proof")
    if proof is not None and not isinstance(proof, str):
        raise WebhookContractError("proof must be a string")

    return WorkerPrediction(inference_value=inference_value, forecasts=forecasts, extra_data=extra_data, proof=proof)


async def fetch_prediction(
    session: aiohttp.ClientSession,
    url: str,
    active_workers: Sequence[str],
    timeout: float = 10.0,
    policy: str = "throw",
) -> WorkerPrediction:
    """POST ``{"activeWorkers": [...]}`` to a model webhook.

    Raises :class:`WebhookContractError` for answers that break the contract
    and ``aiohttp.ClientError`` / ``asyncio.TimeoutError`` for transport
    failures, which callers may retry.
    """

    async with session.post(
        url,
        json={"activeWorkers": list(active_workers)},
        timeout=aiohttp.ClientTimeout(total=timeout),
    ) as resp:
        if resp.status >= 500:
            raise aiohttp.ClientResponseError(
                resp.request_info, resp.history, status=resp.status, message=f"webhook returned HTTP {resp.status}"
            )
        if resp.status != 200:
            raise WebhookContractError(f"Webhook {url} returned HTTP {resp.status}")
        try:
            data = await resp.json(content_type=None)
        except ValueError as exc:
            raise WebhookContractError(f"Webhook {url} did not return JSON: {exc}") from exc

    prediction = parse_worker_response(data, policy)
    logger.debug(
        "Webhook %s answered inference=%s forecasts=%d", url, prediction.inference_value, len(prediction.forecasts)
    )
    return prediction


class PredictionClient:
    """Owns one ``aiohttp`` session for all webhook calls of a process."""

    def __init__(self, timeout: float = 10.0, policy: str = "throw") -> None:
        self.timeout = timeout
        self.policy = policy
        self._session: Optional[aiohttp.ClientSession] = None

    async def fetch(self, url: str, active_workers: Sequence[str]) -> WorkerPrediction:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
        return await fetch_prediction(self._session, url, active_workers, self.timeout, self.policy)

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    async def __aenter__(self) -> "PredictionClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()
