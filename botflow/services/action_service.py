"""Side-effecting workflow actions (CRM updates, webhooks)."""
import httpx
from loguru import logger

from botflow.core.exceptions import ConfigurationError


SIMULATED_MESSAGES = {
    "update_contact": "Contact information has been updated.",
    "create_opportunity": "New opportunity has been created in the pipeline.",
    "send_email": "Email has been sent successfully.",
    "send_webhook": "Webhook has been sent.",
}

WEBHOOK_TIMEOUT_SECONDS = 10.0


def action_type_of(action: dict) -> str:
    return action.get("type") or action.get("action_type") or "unknown"


def action_data_of(action: dict) -> dict:
    """Actions are stored either as {type, data: {...}} or flat {action_type, tag, ...}."""
    data = action.get("data")
    if isinstance(data, dict):
        return data
    return {k: v for k, v in action.items() if k not in ("type", "action_type")}


def _tags(data: dict) -> list[str]:
    tags = data.get("tags") or ([data["tag"]] if data.get("tag") else [])
    return [str(t) for t in tags]


def describe_action(action: dict) -> str:
    """Human-readable confirmation for an action."""
    action_type = action_type_of(action)
    data = action_data_of(action)
    if action_type == "add_tag":
        tags = _tags(data) or ["workflow-processed"]
        return f'Tag "{", ".join(tags)}" has been added to the contact.'
    if action_type == "remove_tag":
        return f'Tag "{", ".join(_tags(data))}" has been removed from the contact.'
    return SIMULATED_MESSAGES.get(action_type, f'Action "{action_type}" has been completed.')


class ActionService:
    """
    Executes node side effects.

    Failures are logged and reported back as ``(False, message)``; they never
    propagate to the conversation. With ``simulate=True`` nothing leaves the
    process.
    """

    def __init__(self, crm_client=None, action_log=None, simulate: bool = False, transport: httpx.AsyncBaseTransport | None = None):
        self.crm = crm_client
        self.action_log = action_log
        self.simulate = simulate
        self._transport = transport

    async def execute(self, action: dict, context: dict) -> tuple[bool, str]:
        """
        Run one action.

        Args:
            action: Action definition from the node
            context: {"session_id", "contact_id", "session_data"}

        Returns:
            (ok, human-readable message)
        """
        action_type = action_type_of(action)
        data = action_data_of(action)
        session_id = context.get("session_id")
        log_id = await self._log(session_id, action_type, data, "simulated" if self.simulate else "pending")

        if self.simulate:
            return True, describe_action(action)

        try:
            await self._dispatch(action_type, data, context)
        except Exception as e:
            logger.error(f"Action {action_type} failed for session {session_id}: {e}")
            await self._finish(log_id, "failed", str(e))
            return False, f'Action "{action_type}" could not be completed.'

        await self._finish(log_id, "completed")
        return True, describe_action(action)

    async def _dispatch(self, action_type: str, data: dict, context: dict) -> None:
        contact_id = context.get("contact_id")

        if action_type == "send_webhook":
            await self._send_webhook(data, context)
            return

        if self.crm is None:
            raise ConfigurationError("No CRM connection configured")

        if action_type == "add_tag":
            await self.crm.add_tags(contact_id, _tags(data))
        elif action_type == "remove_tag":
            await self.crm.remove_tags(contact_id, _tags(data))
        elif action_type == "update_contact":
            fields = data.get("fields") or {k: v for k, v in data.items() if k != "contact_id"}
            await self.crm.update_contact(contact_id, fields)
        elif action_type == "create_opportunity":
            await self.crm.create_opportunity({"contactId": contact_id, **data})
        else:
            raise ValueError(f"Unsupported action type '{action_type}'")

    async def _send_webhook(self, data: dict, context: dict) -> None:
        url = data.get("url")
        if not url:
            raise ValueError("Webhook action has no url")

        body = {
            **(data.get("payload") or {}),
            "sessionId": context.get("session_id"),
            "contactId": context.get("contact_id"),
            "sessionData": context.get("session_data") or {},
        }
        async with httpx.AsyncClient(timeout=WEBHOOK_TIMEOUT_SECONDS, transport=self._transport) as client:
            response = await client.post(url, json=body)
            response.raise_for_status()

    async def _log(self, session_id, action_type: str, data: dict, status: str):
        if self.action_log is None or not session_id:
            return None
        try:
            return await self.action_log.record_action(session_id, action_type, data, status)
        except Exception as e:
            logger.warning(f"Could not record action {action_type}: {e}")
            return None

    async def _finish(self, log_id, status: str, error_message: str | None = None) -> None:
        if self.action_log is None or log_id is None:
            return
        try:
            await self.action_log.finish_action(log_id, status, error_message)
        except Exception as e:
            logger.warning(f"Could not update action log {log_id}: {e}")
