"""
HTTP wrapper around the permissions API.
"""
from datetime import datetime
from typing import Any, Dict, List, Optional

import httpx

from app.utils import get_logger


log = get_logger(__name__)


class PermissionsAPIError(Exception):
    """Non-2xx response from the permissions API."""

    def __init__(self, status_code: int, message: str):
        super().__init__(f"{status_code}: {message}")
        self.status_code = status_code
        self.message = message


class PermissionsAPI:
    """
    Async client for the permissions endpoints.

    Usage:
        async with PermissionsAPI("https://people.example.com/api", token) as api:
            allowed = await api.check_my_permission("goals", "create")
    """

    def __init__(
        self,
        base_url: str,
        token: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = 10.0,
    ):
        headers = {"Content-Type": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        self._client = httpx.AsyncClient(
            base_url=base_url,
            headers=headers,
            transport=transport,
            timeout=timeout,
        )

    async def __aenter__(self) -> "PermissionsAPI":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(self, method: str, endpoint: str, **kwargs) -> Any:
        response = await self._client.request(method, endpoint, **kwargs)
        if response.is_error:
            try:
                message = response.json().get("detail", response.reason_phrase)
            except ValueError:
                message = response.reason_phrase
            log.debug("%s %s failed: %s %s", method, endpoint, response.status_code, message)
            raise PermissionsAPIError(response.status_code, str(message))
        if response.status_code == httpx.codes.NO_CONTENT:
            return None
        return response.json()

    # Checks

    async def check_my_permission(self, resource: str, action: str) -> bool:
        data = await self._request("POST", "/check-my-permission", json={"resource": resource, "action": action})
        return bool(data["hasPermission"])

    async def check_my_permissions(self, checks: List[Dict[str, str]]) -> List[bool]:
        data = await self._request("POST", "/check-my-permissions", json={"checks": checks})
        return [bool(result) for result in data["results"]]

    async def check_permission(self, user_id: int, resource: str, action: str) -> bool:
        data = await self._request(
            "POST", "/check-permission",
            json={"userId": user_id, "resource": resource, "action": action},
        )
        return bool(data["hasPermission"])

    async def get_my_permissions(self) -> Dict[str, Any]:
        return await self._request("GET", "/my-permissions")

    # Catalog

    async def get_resources(self) -> List[Dict[str, Any]]:
        return await self._request("GET", "/resources")

    async def get_permissions(self) -> List[Dict[str, Any]]:
        return await self._request("GET", "/permissions")

    # Bindings

    async def get_role_permissions(self, role: str) -> List[Dict[str, Any]]:
        return await self._request("GET", f"/roles/{role}/permissions")

    async def assign_permission_to_role(self, role: str, permission_id: int) -> Dict[str, Any]:
        return await self._request("POST", "/role-permissions", json={"role": role, "permissionId": permission_id})

    async def remove_role_permission(self, binding_id: int) -> None:
        await self._request("DELETE", f"/role-permissions/{binding_id}")

    async def get_user_permissions(self, user_id: int) -> List[Dict[str, Any]]:
        return await self._request("GET", f"/users/{user_id}/permissions")

    async def assign_permission_to_user(
        self,
        user_id: int,
        permission_id: int,
        granted: bool = True,
        expires_at: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        body = {
            "userId": user_id,
            "permissionId": permission_id,
            "granted": granted,
            "expiresAt": expires_at.isoformat() if expires_at else None,
        }
        return await self._request("POST", "/user-permissions", json=body)

    async def remove_user_permission(self, override_id: int) -> None:
        await self._request("DELETE", f"/user-permissions/{override_id}")
