#!/usr/bin/env python3
"""
Shared Model Base

Response models keep unknown vendor fields so new API additions survive a
round trip through the typed layer.
"""

from typing import Any, Dict

from pydantic import BaseModel, ConfigDict


class VendorModel(BaseModel):
    """Base for typed vendor payloads."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    def to_payload(self) -> Dict[str, Any]:
        """Serialise for a request body using vendor field names."""
        return self.model_dump(by_alias=True, exclude_none=True)
