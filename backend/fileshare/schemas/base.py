"""camelCase base model for everything that goes over HTTP or the socket.

Python code uses snake_case attributes; JSON uses camelCase keys
(display_name -> displayName). Both spellings are accepted on input.
"""
from typing import Any

from pydantic import BaseModel
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    model_config = {
        "alias_generator": to_camel,
        "populate_by_name": True,
        "protected_namespaces": (),
    }

    def to_wire(self, **kwargs: Any) -> dict:
        """JSON-safe dict with camelCase keys, as sent to socket subscribers."""
        return self.model_dump(mode="json", by_alias=True, **kwargs)
