"""
HTTP client for the pricing endpoint.

Used by ``CartAggregator.revalidate_async`` when a cart is repriced by a
remote storefront instance instead of the in-process validator.
"""
from typing import List, Optional
import httpx

from .. import config, schemas


async def validate_pricing(
    items: List[schemas.PricingItem],
    token: Optional[str] = None,
    base_url: Optional[str] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> schemas.PricingResult:
    """
    Reprice cart items through ``POST /pricing/validate``.

    Args:
        items: Items to reprice
        token: Bearer token forwarded to the service (optional)
        base_url: Service root (defaults to PRICING_SERVICE_URL)
        transport: httpx transport override (tests)

    Returns:
        PricingResult as computed by the service

    Raises:
        httpx.HTTPError: If there's a network error or the service is unavailable
    """
    headers = {"Authorization": f"Bearer {token}"} if token else None
    request = schemas.PricingRequest(items=items)
    async with httpx.AsyncClient(
        base_url=base_url or config.PRICING_SERVICE_URL,
        timeout=config.HTTP_TIMEOUT,
        transport=transport,
    ) as client:
        response = await client.post("/pricing/validate", json=request.model_dump(mode="json"), headers=headers)
        response.raise_for_status()
        return schemas.PricingResult.model_validate(response.json())
