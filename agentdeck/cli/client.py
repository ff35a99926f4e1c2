"""HTTP client for the agentdeck API."""

import os
from typing import Optional
import urllib.request
import urllib.error
import json

# Default API endpoint
DEFAULT_API_URL = "http://127.0.0.1:4003"
API_TIMEOUT = 5  # seconds


class AgentDeckClient:
    """Client for the agentdeck API."""

    def __init__(self, api_url: Optional[str] = None):
        """
        Initialize client.

        Args:
            api_url: Base URL for API (default: $AGENTDECK_API_URL or http://127.0.0.1:4003)
        """
        self.api_url = (api_url or os.environ.get("AGENTDECK_API_URL", DEFAULT_API_URL)).rstrip("/")
        self.last_error: Optional[str] = None

    def _request(
        self,
        method: str,
        path: str,
        data: Optional[dict] = None,
        timeout: Optional[float] = None,
    ) -> tuple[Optional[dict], bool, bool]:
        """
        Make an HTTP request.

        Returns:
            Tuple of (response_data, success, unavailable)
            - success=True, unavailable=False: Request succeeded
            - success=False, unavailable=True: Connection error (server not running)
            - success=False, unavailable=False: API error; detail in last_error
        """
        url = f"{self.api_url}{path}"
        request_timeout = timeout if timeout is not None else API_TIMEOUT
        self.last_error = None

        try:
            headers = {"Content-Type": "application/json"}
            body = json.dumps(data).encode() if data is not None else None

            req = urllib.request.Request(url, data=body, headers=headers, method=method)
            with urllib.request.urlopen(req, timeout=request_timeout) as response:
                return json.loads(response.read().decode()), True, False

        except urllib.error.HTTPError as e:
            # API responded with an error status
            try:
                detail = json.loads(e.read().decode()).get("detail")
            except (ValueError, AttributeError):
                detail = None
            self.last_error = detail or f"HTTP {e.code}"
            return None, False, False
        except (urllib.error.URLError, OSError) as e:
            self.last_error = str(e)
            return None, False, True

    def list_sessions(self) -> Optional[list]:
        """List all sessions."""
        data, success, _ = self._request("GET", "/sessions")
        if success and data:
            return data.get("sessions", [])
        return None

    def get_session(self, session_id: str) -> Optional[dict]:
        data, success, _ = self._request("GET", f"/sessions/{session_id}")
        return data.get("session") if success and data else None

    def create_session(
        self,
        name: Optional[str],
        cwd: Optional[str],
        flags: dict,
    ) -> Optional[dict]:
        payload = {"cwd": cwd, "flags": flags}
        if name:
            payload["name"] = name
        data, success, _ = self._request("POST", "/sessions", payload, timeout=15)
        return data.get("session") if success and data else None

    def delete_session(self, session_id: str) -> bool:
        _, success, _ = self._request("DELETE", f"/sessions/{session_id}")
        return success

    def rename_session(self, session_id: str, name: str) -> bool:
        _, success, _ = self._request("PATCH", f"/sessions/{session_id}", {"name": name})
        return success

    def send_prompt(self, session_id: str, prompt: str) -> bool:
        _, success, _ = self._request("POST", f"/sessions/{session_id}/prompt", {"prompt": prompt})
        return success

    def cancel(self, session_id: str) -> bool:
        _, success, _ = self._request("POST", f"/sessions/{session_id}/cancel")
        return success

    def respond_permission(self, session_id: str, response: str) -> bool:
        _, success, _ = self._request(
            "POST", f"/sessions/{session_id}/permission", {"response": response}
        )
        return success

    def restart(self, session_id: str) -> Optional[dict]:
        data, success, _ = self._request("POST", f"/sessions/{session_id}/restart", timeout=15)
        return data.get("session") if success and data else None

    def link(self, session_id: str, claude_session_id: str) -> bool:
        _, success, _ = self._request(
            "POST", f"/sessions/{session_id}/link", {"claudeSessionId": claude_session_id}
        )
        return success

    def refresh(self) -> Optional[list]:
        data, success, _ = self._request("POST", "/sessions/refresh")
        return data.get("sessions", []) if success and data else None

    def get_output(self, session_id: str, lines: int = 50) -> Optional[str]:
        data, success, _ = self._request("GET", f"/sessions/{session_id}/output?lines={lines}")
        return data.get("output") if success and data else None

    def post_event(self, event: dict, timeout: float = 1.0) -> bool:
        """Push one lifecycle event. Short timeout: called from Claude hooks."""
        _, success, _ = self._request("POST", "/event", event, timeout=timeout)
        return success
