"""Validated dotted paths into ``InvoiceFields``.

Accepted shapes are ``<field>``, ``lineItems[<i>]`` and
``lineItems[<i>].<itemField>``; segments may be camelCase or snake_case and
list indexes may also be written as ``lineItems.0.sku``.
"""
import re
from dataclasses import dataclass
from typing import Any, Optional

from pydantic.alias_generators import to_camel, to_snake

from invoice_memory.domain.exceptions import InvalidFieldPath
from invoice_memory.domain.models import InvoiceFields, LineItem

_INDEX = re.compile(r"\[(\d+)\]")
_LIST_FIELD = "line_items"


@dataclass(frozen=True)
class FieldPath:
    attribute: str
    index: Optional[int] = None
    item_attribute: Optional[str] = None

    @classmethod
    def parse(cls, path: str) -> "FieldPath":
        if not isinstance(path, str) or not path.strip():
            raise InvalidFieldPath(f"Empty field path: {path!r}")

        segments = _INDEX.sub(r".\1", path.strip()).split(".")
        attribute = to_snake(segments[0])
        if attribute not in InvoiceFields.model_fields:
            raise InvalidFieldPath(f"Unknown invoice field '{segments[0]}' in {path!r}")

        rest = segments[1:]
        if not rest:
            return cls(attribute)
        if attribute != _LIST_FIELD or not rest[0].isdigit() or len(rest) > 2:
            raise InvalidFieldPath(f"Unsupported field path: {path!r}")

        index = int(rest[0])
        if len(rest) == 1:
            return cls(attribute, index)

        item_attribute = to_snake(rest[1])
        if item_attribute not in LineItem.model_fields:
            raise InvalidFieldPath(f"Unknown line item field '{rest[1]}' in {path!r}")
        return cls(attribute, index, item_attribute)

    def line_item_index(self) -> Optional[int]:
        return self.index if self.attribute == _LIST_FIELD else None

    def get(self, fields: InvoiceFields) -> Any:
        value = getattr(fields, self.attribute)
        if self.index is None:
            return value
        if self.index >= len(value):
            return None
        item = value[self.index]
        if self.item_attribute is None:
            return item
        return getattr(item, self.item_attribute)

    def set(self, fields: InvoiceFields, value: Any) -> None:
        if self.index is None:
            setattr(fields, self.attribute, value)
            return

        items = fields.line_items
        if self.index >= len(items):
            raise InvalidFieldPath(
                f"Line item {self.index} does not exist ({len(items)} items)"
            )
        if self.item_attribute is None:
            items[self.index] = LineItem.model_validate(value)
        else:
            setattr(items[self.index], self.item_attribute, value)

    def __str__(self) -> str:
        text = to_camel(self.attribute)
        if self.index is not None:
            text += f"[{self.index}]"
        if self.item_attribute is not None:
            text += f".{to_camel(self.item_attribute)}"
        return text
