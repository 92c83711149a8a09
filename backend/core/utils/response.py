"""
Response utility for consistent API responses
"""
from decimal import Decimal
from typing import Any, Optional, Dict
from fastapi.responses import JSONResponse
from fastapi import status
from pydantic import BaseModel
from uuid import UUID
from datetime import datetime, date
from enum import Enum


class Response(JSONResponse):
    """
    Success envelope: ``{"success": true, "data": ..., "message": ...}``.
    Errors never go through here; they are raised and rendered by the
    exception handlers.
    """

    def __init__(
        self,
        data: Any = None,
        message: str = "Success",
        status_code: int = status.HTTP_200_OK,
        pagination: Optional[Dict[str, Any]] = None,
        **kwargs
    ):
        response_data = {
            "success": True,
            "data": self._serialize_data(data),
            "message": message
        }

        if pagination:
            response_data["pagination"] = pagination

        super().__init__(
            content=response_data,
            status_code=status_code,
            **kwargs
        )

    def _serialize_data(self, data: Any) -> Any:
        if data is None:
            return None
        elif isinstance(data, BaseModel):
            return data.model_dump(mode='json', by_alias=True)
        elif isinstance(data, UUID):
            return str(data)
        elif isinstance(data, Decimal):
            # Money leaves the API as a plain number with two decimals
            return float(data)
        elif isinstance(data, Enum):
            return data.value
        elif isinstance(data, (datetime, date)):
            return data.isoformat()
        elif isinstance(data, (list, tuple)):
            return [self._serialize_data(item) for item in data]
        elif isinstance(data, dict):
            return {key: self._serialize_data(value) for key, value in data.items()}
        else:
            return data

    @staticmethod
    def success(
        data: Any = None,
        message: str = "Success",
        status_code: int = status.HTTP_200_OK,
        pagination: Optional[Dict[str, Any]] = None
    ) -> "Response":
        return Response(
            data=data,
            message=message,
            status_code=status_code,
            pagination=pagination
        )


def paginate(page: int, limit: int, total: int) -> Dict[str, Any]:
    """Pagination block returned next to list payloads."""
    pages = (total + limit - 1) // limit if limit else 0
    return {
        "currentPage": page,
        "totalPages": pages,
        "totalItems": total,
        "itemsPerPage": limit,
        "hasNext": page < pages,
        "hasPrev": page > 1,
    }
