import httpx
import logging
import os
from typing import Any, Dict, Optional

from ..errors import ConfigurationError

logger = logging.getLogger(__name__)

VAPI_BASE_URL = os.getenv("VAPI_BASE_URL", "https://api.vapi.ai")
VAPI_API_KEY = os.getenv("VAPI_API_KEY", "")


class VapiClient:
    """Starts and ends one web call at a time through the Vapi REST API"""

    def __init__(self, api_key: Optional[str] = None, base_url: Optional[str] = None, timeout: float = 15.0):
        self.api_key = (api_key if api_key is not None else VAPI_API_KEY).strip()
        self.base_url = (base_url or VAPI_BASE_URL).rstrip("/")
        self.timeout = timeout
        self.current_call: Optional[Dict[str, Any]] = None

    async def start(self, workflow_id: str, variable_values: Dict[str, Any]) -> Dict[str, Any]:
        """
        Create a web call for the workflow.

        Returns the call object; its webCallUrl is what the browser joins.
        Raises ConfigurationError without credentials and httpx errors on
        transport failures.
        """
        if not self.api_key:
            raise ConfigurationError("VAPI configuration error: API key is missing")
        if not workflow_id:
            raise ConfigurationError("VAPI workflow ID is missing")

        url = f"{self.base_url}/call/web"
        payload = {
            "workflowId": workflow_id,
            "workflowOverrides": {"variableValues": variable_values},
        }
        headers = {"Authorization": f"Bearer {self.api_key}"}

        logger.info(
            f"VapiClient: Starting {variable_values.get('phase')} call for session {variable_values.get('sessionId')}"
        )

        async with httpx.AsyncClient(timeout=self.timeout) as client:
            response = await client.post(url, json=payload, headers=headers)
            response.raise_for_status()
            call = response.json()

        self.current_call = call
        logger.info(f"VapiClient: Call {call.get('id')} created")
        return call

    async def stop(self) -> None:
        """End the current call. Never raises, the call may already be closed."""
        call = self.current_call
        self.current_call = None
        if not call:
            return

        control_url = (call.get("monitor") or {}).get("controlUrl")
        if not control_url:
            logger.warning(f"VapiClient: Call {call.get('id')} has no control URL, cannot end it remotely")
            return

        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(control_url, json={"type": "end-call"})
                response.raise_for_status()
            logger.info(f"VapiClient: Call {call.get('id')} ended")
        except httpx.HTTPError as e:
            logger.warning(f"VapiClient: Error ending call {call.get('id')}: {e}")
        except Exception as e:
            logger.error(f"VapiClient: Unexpected error ending call {call.get('id')}: {e}", exc_info=True)
