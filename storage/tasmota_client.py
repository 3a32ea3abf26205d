"""
HTTP client for Tasmota relays that drive door locks.
"""
from typing import Any, Dict, Optional

import requests

from core.errors import ActuatorError
from core.logger import logger


class TasmotaClient:
    """Reads and sets relay power state over the Tasmota HTTP command API."""

    def __init__(self, timeout: float = 5.0, session: Optional[requests.Session] = None):
        """
        Initialize relay client.

        Args:
            timeout: Per-request timeout in seconds
            session: Optional requests session (connection pooling, tests)
        """
        self.timeout = timeout
        self.session = session or requests.Session()

    @staticmethod
    def _headers(key: Optional[str]) -> Dict[str, str]:
        headers = {}
        if key:
            headers["Authorization"] = f"Bearer {key}"
        return headers

    def _command(self, address: str, command: str, key: Optional[str]) -> Dict[str, Any]:
        url = f"http://{address}/cm"
        try:
            response = self.session.get(
                url,
                params={"cmnd": command},
                headers=self._headers(key),
                timeout=self.timeout,
            )
            response.raise_for_status()
            return response.json()
        except requests.RequestException as e:
            logger.error(f"Relay command '{command}' to {address} failed: {e}")
            raise ActuatorError(address, str(e)) from e
        except ValueError as e:
            logger.error(f"Relay at {address} returned a non-JSON body for '{command}'")
            raise ActuatorError(address, "invalid response body") from e

    def read_state(self, address: str, key: Optional[str] = None) -> Dict[str, bool]:
        """
        Read relay power state.

        Returns:
            {"on": bool}

        Raises:
            ActuatorError: On transport failure or unexpected payload
        """
        data = self._command(address, "Power", key)
        power = data.get("POWER") if isinstance(data, dict) else None
        if power not in ("ON", "OFF"):
            raise ActuatorError(address, f"unexpected state payload: {data!r}")
        return {"on": power == "ON"}

    def set_state(self, address: str, on: bool, key: Optional[str] = None) -> Dict[str, Any]:
        """
        Switch the relay on or off.

        Returns:
            Relay response payload, e.g. {"POWER": "ON"}

        Raises:
            ActuatorError: On transport failure
        """
        command = "Power On" if on else "Power Off"
        result = self._command(address, command, key)
        logger.info(f"Relay {address} set {'ON' if on else 'OFF'}")
        return result

    def toggle(self, address: str, key: Optional[str] = None) -> Dict[str, Any]:
        """
        Flip the relay. Not atomic: callers serialize per door.
        """
        current = self.read_state(address, key)
        return self.set_state(address, not current["on"], key)
