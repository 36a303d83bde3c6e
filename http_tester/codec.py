"""JSON and XML codecs for request and response bodies.

JSON goes through pydantic: ``encode_json`` serializes models, dataclasses
and plain containers compactly, and ``decode_json`` validates into any type
pydantic understands (models, dataclasses, TypedDicts, ``dict[str, int]``).

XML is mapped onto plain dicts so the same pydantic validation applies:
``xml_to_dict`` turns a document into ``{root_tag: {...}}`` and
``dict_to_xml`` does the reverse for request bodies. XML attributes are
read as ``@name`` keys but never written, and namespaces are dropped.
"""

from __future__ import annotations

import json
import xml.etree.ElementTree as ET
from typing import Any

from pydantic import BaseModel, PydanticUserError, TypeAdapter

_ANY_ADAPTER: TypeAdapter[Any] = TypeAdapter(Any)


# ---------------------------------------------------------------------------
# JSON
# ---------------------------------------------------------------------------


def encode_json(value: Any) -> bytes:
    """Serialize *value* to compact JSON bytes.

    Raises:
        pydantic_core.PydanticSerializationError: If *value* contains a type
            pydantic cannot serialize. It is a ValueError subclass.
    """
    if isinstance(value, BaseModel):
        return value.model_dump_json().encode("utf-8")
    return _ANY_ADAPTER.dump_json(value)


def _validate(target: Any, data: Any, from_json: bool) -> Any:
    """Validate *data* into *target*; a target pydantic cannot handle is a ValueError."""
    try:
        adapter = TypeAdapter(target)
        if from_json:
            return adapter.validate_json(data)
        return adapter.validate_python(data)
    except (PydanticUserError, TypeError, KeyError, AttributeError) as e:
        raise ValueError(f"cannot decode into {target!r}: {e}") from e


def decode_json(data: bytes, target: Any = None) -> Any:
    """Parse JSON bytes, validating into *target* when one is given.

    Raises:
        ValueError: json.JSONDecodeError, pydantic.ValidationError, or a
            target no TypeAdapter can be built for.
    """
    if target is None:
        return json.loads(data)
    return _validate(target, data, from_json=True)


# ---------------------------------------------------------------------------
# XML -> dict
# ---------------------------------------------------------------------------


def xml_to_dict(
    xml_bytes: bytes,
    force_list: set[str] | None = None,
) -> dict[str, Any]:
    """Convert an XML document into ``{root_tag: content}``.

    *force_list* names tags that always become lists, even with a single
    occurrence, so callers get a stable shape for repeated elements.

    Raises:
        ET.ParseError: If *xml_bytes* is not well-formed.
    """
    root = ET.fromstring(xml_bytes)
    return {_local_name(root.tag): _convert_element(root, force_list or set())}


def decode_xml(
    data: bytes,
    target: Any = None,
    force_list: set[str] | None = None,
) -> Any:
    """Parse XML bytes into a dict, validating into *target* when given.

    A model target is validated against the root element's content, so
    ``<User><Name>a</Name></User>`` fills ``class User(BaseModel): Name: str``.
    Any other target sees the whole ``{root_tag: ...}`` dict.
    """
    converted = xml_to_dict(data, force_list)
    if target is None:
        return converted
    if isinstance(target, type) and issubclass(target, BaseModel):
        content = next(iter(converted.values()))
        return target.model_validate(content or {})
    return _validate(target, converted, from_json=False)


def _local_name(tag: str) -> str:
    """``{urn:example}Name`` -> ``Name``."""
    return tag.rsplit("}", 1)[-1] if tag.startswith("{") else tag


def _convert_element(
    element: ET.Element,
    force_list: set[str],
) -> dict[str, Any] | str | None:
    converted: dict[str, Any] = {}

    for name, value in element.attrib.items():
        # namespace declarations and qualified attributes carry no data
        if name.startswith("xmlns") or name.startswith("{"):
            continue
        converted[f"@{name}"] = value

    grouped: dict[str, list[Any]] = {}
    for child in element:
        grouped.setdefault(_local_name(child.tag), []).append(
            _convert_element(child, force_list)
        )
    for tag, items in grouped.items():
        converted[tag] = items if (tag in force_list or len(items) > 1) else items[0]

    text = (element.text or "").strip()
    if text:
        if not converted:
            return text
        converted["#text"] = text

    return converted or None


# ---------------------------------------------------------------------------
# dict -> XML
# ---------------------------------------------------------------------------


def dict_to_xml(data: dict[str, Any]) -> bytes:
    """Serialize ``{root_tag: content}`` to UTF-8 XML with a declaration.

    Nested dicts become child elements, lists become repeated siblings,
    None becomes an empty element and scalars become text.

    Raises:
        ValueError: If *data* is not a dict with exactly one key.
    """
    if not isinstance(data, dict) or len(data) != 1:
        size = len(data) if isinstance(data, dict) else "N/A"
        raise ValueError(
            f"XML body needs a dict with exactly one root key, "
            f"got {type(data).__name__} with {size} keys"
        )
    (tag, content), = data.items()
    root = _build_element(tag, content)
    ET.indent(root)
    return ET.tostring(root, encoding="utf-8", xml_declaration=True)


def encode_xml(value: Any, root: str | None = None) -> bytes:
    """Serialize a request body value to XML bytes.

    A pydantic model is dumped and wrapped in *root* (default: the model's
    class name). A dict without *root* must already be ``{root_tag: ...}``.
    """
    if isinstance(value, BaseModel):
        root = root or type(value).__name__
        value = value.model_dump(mode="json")
    if root is not None:
        value = {root: value}
    return dict_to_xml(value)


def _build_element(tag: str, content: Any) -> ET.Element:
    element = ET.Element(tag)
    if content is None:
        return element
    if isinstance(content, dict):
        for key, child in content.items():
            if key == "#text":
                element.text = str(child)
            elif key.startswith("@"):
                continue
            elif isinstance(child, list):
                element.extend(_build_element(key, item) for item in child)
            else:
                element.append(_build_element(key, child))
    elif isinstance(content, list):
        element.extend(_build_element("item", item) for item in content)
    elif isinstance(content, bool):
        element.text = "true" if content else "false"
    else:
        element.text = str(content)
    return element
