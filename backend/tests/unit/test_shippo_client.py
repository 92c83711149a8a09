import json

import httpx
import pytest

from services.shippo import ShippingProviderError, ShippoClient


def make_client(handler, token="shippo_test_token"):
    return ShippoClient(token, base_url="https://api.goshippo.test", api_version="2018-02-08",
                        transport=httpx.MockTransport(handler))


@pytest.mark.asyncio
async def test_sends_token_and_version_headers():
    seen = {}

    def handler(request):
        seen["auth"] = request.headers["Authorization"]
        seen["version"] = request.headers["Shippo-API-Version"]
        seen["path"] = request.url.path
        return httpx.Response(200, json={"object_id": "txn_1", "status": "SUCCESS"})

    client = make_client(handler)
    result = await client.get_transaction("txn_1")
    await client.close()

    assert result["status"] == "SUCCESS"
    assert seen == {"auth": "ShippoToken shippo_test_token", "version": "2018-02-08",
                    "path": "/transactions/txn_1"}


@pytest.mark.asyncio
async def test_transaction_payload():
    bodies = []

    def handler(request):
        bodies.append(json.loads(request.content))
        return httpx.Response(201, json={"object_id": "txn_1", "status": "QUEUED"})

    client = make_client(handler)
    await client.create_transaction("rate_1", metadata="Order LR-1")
    await client.close()

    assert bodies == [{"rate": "rate_1", "label_file_type": "PDF", "async": False, "metadata": "Order LR-1"}]


@pytest.mark.asyncio
async def test_shipment_payload_includes_extra_and_metadata():
    bodies = []

    def handler(request):
        bodies.append(json.loads(request.content))
        return httpx.Response(201, json={"object_id": "shp_1", "rates": []})

    client = make_client(handler)
    await client.create_shipment({"name": "From"}, {"name": "To"}, [{"weight": "1"}],
                                 metadata="Order LR-1", extra={"bypass_address_validation": True})
    await client.close()

    [body] = bodies
    assert body["address_to"] == {"name": "To"}
    assert body["metadata"] == "Order LR-1"
    assert body["extra"] == {"bypass_address_validation": True}
    assert body["async"] is False


@pytest.mark.asyncio
async def test_error_status_raises_with_provider_body():
    client = make_client(lambda request: httpx.Response(400, text='{"rate": ["Rate expired"]}'))

    with pytest.raises(ShippingProviderError) as exc_info:
        await client.create_transaction("rate_1")
    await client.close()

    assert exc_info.value.operation == "create_transaction"
    assert exc_info.value.provider_status == 400
    assert "Rate expired" in exc_info.value.provider_message


@pytest.mark.asyncio
async def test_timeout_raises_provider_error():
    def handler(request):
        raise httpx.ReadTimeout("timed out", request=request)

    client = make_client(handler)
    with pytest.raises(ShippingProviderError) as exc_info:
        await client.create_address({"name": "To"})
    await client.close()

    assert exc_info.value.provider_message.startswith("Timed out")


@pytest.mark.asyncio
async def test_malformed_json():
    client = make_client(lambda request: httpx.Response(200, text="<html>"))
    with pytest.raises(ShippingProviderError) as exc_info:
        await client.get_transaction("txn_1")
    await client.close()
    assert exc_info.value.provider_message == "Malformed response from Shippo"


@pytest.mark.asyncio
async def test_missing_token_fails_without_calling_out():
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(200, json={})

    client = make_client(handler, token="")
    with pytest.raises(ShippingProviderError):
        await client.get_transaction("txn_1")
    await client.close()

    assert calls == []
