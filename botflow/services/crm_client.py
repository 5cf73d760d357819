"""GoHighLevel REST client (calendars, appointments, contacts)."""
import uuid

import httpx
from loguru import logger

from botflow.core.config import settings
from botflow.core.exceptions import CRMError


class GHLClient:
    """
    Async client for the GoHighLevel v2 API.

    Every failed request (transport error or non-2xx status) raises CRMError.
    """

    def __init__(
        self,
        api_key: str,
        location_id: str | None = None,
        base_url: str | None = None,
        api_version: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.api_key = api_key
        self.location_id = location_id
        self.base_url = (base_url or settings.GHL_API_BASE_URL).rstrip("/")
        self.api_version = api_version or settings.GHL_API_VERSION
        self.timeout = timeout or settings.GHL_TIMEOUT_SECONDS
        self._transport = transport

    def _headers(self) -> dict:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Version": self.api_version,
            "Accept": "application/json",
        }

    async def _request(self, method: str, path: str, **kwargs) -> dict:
        async with httpx.AsyncClient(
            base_url=self.base_url,
            headers=self._headers(),
            timeout=self.timeout,
            transport=self._transport,
        ) as client:
            try:
                response = await client.request(method, path, **kwargs)
                response.raise_for_status()
            except httpx.HTTPStatusError as e:
                logger.error(f"GHL {method} {path} returned {e.response.status_code}: {e.response.text[:300]}")
                raise CRMError(f"GHL {method} {path} failed with status {e.response.status_code}") from e
            except httpx.HTTPError as e:
                logger.error(f"GHL {method} {path} failed: {e}")
                raise CRMError(f"GHL {method} {path} failed: {e}") from e

        if not response.content:
            return {}
        return response.json()

    # ==================== CALENDARS ====================

    async def list_calendars(self) -> list[dict]:
        params = {"locationId": self.location_id} if self.location_id else None
        data = await self._request("GET", "/calendars/", params=params)
        return data.get("calendars", [])

    async def create_appointment(
        self,
        calendar_id: str,
        contact_id: str,
        start_time: str,
        end_time: str | None = None,
        title: str | None = None,
        **extra,
    ) -> dict:
        """
        Book an appointment.

        Returns:
            The provider's appointment object (always carries ``id``)
        """
        payload = {
            "calendarId": calendar_id,
            "contactId": contact_id,
            "startTime": start_time,
            **extra,
        }
        if self.location_id:
            payload["locationId"] = self.location_id
        if end_time:
            payload["endTime"] = end_time
        if title:
            payload["title"] = title

        data = await self._request("POST", "/calendars/events/appointments", json=payload)
        appointment = data.get("appointment", data)
        if not appointment.get("id"):
            raise CRMError("Appointment response did not include an id")
        return appointment

    # ==================== CONTACTS ====================

    async def add_tags(self, contact_id: str, tags: list[str]) -> dict:
        return await self._request("POST", f"/contacts/{contact_id}/tags", json={"tags": tags})

    async def remove_tags(self, contact_id: str, tags: list[str]) -> dict:
        return await self._request("DELETE", f"/contacts/{contact_id}/tags", json={"tags": tags})

    async def update_contact(self, contact_id: str, data: dict) -> dict:
        return await self._request("PUT", f"/contacts/{contact_id}", json=data)

    # ==================== OPPORTUNITIES ====================

    async def create_opportunity(self, data: dict) -> dict:
        payload = dict(data)
        if self.location_id:
            payload.setdefault("locationId", self.location_id)
        return await self._request("POST", "/opportunities/", json=payload)


class SimulatedCRMClient:
    """
    Calendar stand-in for test-harness runs.
    Offers one calendar and hands out fake appointment ids.
    """

    SIMULATED_CALENDAR = {"id": "test-calendar", "name": "Test Calendar", "description": "Simulated calendar"}

    async def list_calendars(self) -> list[dict]:
        return [dict(self.SIMULATED_CALENDAR)]

    async def create_appointment(
        self,
        calendar_id: str,
        contact_id: str,
        start_time: str,
        end_time: str | None = None,
        title: str | None = None,
        **extra,
    ) -> dict:
        appointment_id = f"sim-{uuid.uuid4().hex[:12]}"
        logger.info(f"Simulated appointment {appointment_id} on {calendar_id} at {start_time}")
        return {
            "id": appointment_id,
            "calendarId": calendar_id,
            "contactId": contact_id,
            "startTime": start_time,
            "endTime": end_time,
            "title": title,
        }
