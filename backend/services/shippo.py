"""
Shippo REST client (addresses, shipments/rates, transactions)
"""
import logging
from typing import Any, Dict, List, Optional

import httpx

from core.exceptions import ShipmentException
from core.logging import structured_logger

logger = logging.getLogger(__name__)


class ShippingProviderError(ShipmentException):
    """Shippo call failed or timed out"""

    def __init__(self, operation: str, provider_message: str, status_code: Optional[int] = None):
        self.operation = operation
        self.provider_status = status_code
        super().__init__(message="Shipping provider request failed", provider_message=provider_message)


class ShippoClient:
    """Async Shippo API client; one instance per process"""

    def __init__(
        self,
        api_token: str,
        base_url: str = "https://api.goshippo.com",
        api_version: Optional[str] = None,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        headers = {
            "Authorization": f"ShippoToken {api_token}",
            "Content-Type": "application/json",
        }
        if api_version:
            headers["Shippo-API-Version"] = api_version
        self.configured = bool(api_token)
        self._client = httpx.AsyncClient(
            base_url=base_url,
            headers=headers,
            timeout=timeout,
            transport=transport,
        )

    async def close(self):
        await self._client.aclose()

    async def _request(self, operation: str, method: str, path: str, json: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        if not self.configured:
            raise ShippingProviderError(operation, "SHIPPO_API_TOKEN is not set")
        try:
            response = await self._client.request(method, path, json=json)
        except httpx.TimeoutException as e:
            structured_logger.error(
                message=f"Shippo {operation} timed out",
                metadata={"operation": operation, "path": path},
                exception=e,
            )
            raise ShippingProviderError(operation, f"Timed out: {e}")
        except httpx.HTTPError as e:
            structured_logger.error(
                message=f"Shippo {operation} failed",
                metadata={"operation": operation, "path": path},
                exception=e,
            )
            raise ShippingProviderError(operation, str(e))

        if response.status_code >= 400:
            structured_logger.error(
                message=f"Shippo {operation} rejected",
                metadata={"operation": operation, "status": response.status_code, "body": response.text[:2000]},
            )
            raise ShippingProviderError(operation, response.text, status_code=response.status_code)

        try:
            return response.json()
        except ValueError:
            raise ShippingProviderError(operation, "Malformed response from Shippo", status_code=response.status_code)

    async def create_address(self, address: Dict[str, Any], validate: bool = True) -> Dict[str, Any]:
        return await self._request("create_address", "POST", "/addresses/", json={**address, "validate": validate})

    async def create_shipment(
        self,
        address_from: Dict[str, Any],
        address_to: Dict[str, Any],
        parcels: List[Dict[str, Any]],
        metadata: Optional[str] = None,
        extra: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "address_from": address_from,
            "address_to": address_to,
            "parcels": parcels,
            "async": False,
        }
        if metadata:
            payload["metadata"] = metadata
        if extra:
            payload["extra"] = extra
        return await self._request("create_shipment", "POST", "/shipments/", json=payload)

    async def create_transaction(self, rate_id: str, metadata: Optional[str] = None) -> Dict[str, Any]:
        payload = {"rate": rate_id, "label_file_type": "PDF", "async": False}
        if metadata:
            payload["metadata"] = metadata
        return await self._request("create_transaction", "POST", "/transactions/", json=payload)

    async def get_transaction(self, transaction_id: str) -> Dict[str, Any]:
        return await self._request("get_transaction", "GET", f"/transactions/{transaction_id}")
