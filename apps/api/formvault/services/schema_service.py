"""Structural schema extraction for XForms.

Reads the primary instance, bind types and body repeats of an XForm into a
tagged tree of ``Leaf``/``Structure``/``Repeat`` nodes, and projects that tree
into the flattened field layout used by tabular exports.
"""

from __future__ import annotations

import xml.etree.ElementTree as ET
from typing import Iterable, Iterator

from formvault.core.errors import SubmissionValidationError
from formvault.db.enums import FieldType
from formvault.schemas.form_schema import FlatField, FormMetadata, Leaf, Repeat, SchemaNode, Structure


JAVAROSA_NS = "http://openrosa.org/javarosa"
XFORMS_NS = "http://www.w3.org/2002/xforms"
XHTML_NS = "http://www.w3.org/1999/xhtml"
ODK_NS = "http://www.opendatakit.org/xforms"
ORX_NS = "http://openrosa.org/xforms"

# Keep conventional prefixes when rewritten forms are serialized.
for _prefix, _uri in (("", XFORMS_NS), ("h", XHTML_NS), ("jr", JAVAROSA_NS), ("odk", ODK_NS), ("orx", ORX_NS)):
    ET.register_namespace(_prefix, _uri)


def local_name(tag: str) -> str:
    """Strip a ``{namespace}`` or ``prefix:`` qualifier from a tag or path segment."""
    if "}" in tag:
        tag = tag.split("}", 1)[1]
    if ":" in tag:
        tag = tag.split(":", 1)[1]
    return tag


def parse_xml(xml: str | bytes) -> ET.Element:
    try:
        return ET.fromstring(xml)
    except ET.ParseError as exc:
        raise SubmissionValidationError(f"Could not parse the given data as xml: {exc}")


def _children(element: ET.Element, name: str) -> Iterator[ET.Element]:
    for child in element:
        if isinstance(child.tag, str) and local_name(child.tag) == name:
            yield child


def _find(element: ET.Element, *names: str) -> ET.Element | None:
    current: ET.Element | None = element
    for name in names:
        if current is None:
            return None
        current = next(_children(current, name), None)
    return current


def _model(root: ET.Element) -> ET.Element:
    model = _find(root, "head", "model")
    if model is None:
        raise SubmissionValidationError("Form definition has no model.")
    return model


def _primary_instance_root(model: ET.Element) -> ET.Element:
    instance = next(_children(model, "instance"), None)
    if instance is None:
        raise SubmissionValidationError("Form definition has no primary instance.")
    data = next((child for child in instance if isinstance(child.tag, str)), None)
    if data is None:
        raise SubmissionValidationError("Form definition has an empty primary instance.")
    return data


def _nodeset_path(nodeset: str, root_name: str) -> tuple[str, ...]:
    segments = [local_name(s) for s in nodeset.strip().split("/") if s]
    if segments and segments[0] == root_name:
        segments = segments[1:]
    return tuple(segments)


def get_form_metadata(xml: str | bytes) -> FormMetadata:
    """Extract the form id, version and self-managed public key of an XForm."""
    root = parse_xml(xml)
    model = _model(root)
    data = _primary_instance_root(model)
    xml_form_id = (data.get("id") or "").strip()
    if not xml_form_id:
        raise SubmissionValidationError("Required parameter form ID xml attribute missing.")
    submission = next(_children(model, "submission"), None)
    public_key = submission.get("base64RsaPublicKey") if submission is not None else None
    return FormMetadata(
        xml_form_id=xml_form_id,
        version=data.get("version") or "",
        public_key=public_key or None,
    )


def get_form_schema(xml: str | bytes) -> list[SchemaNode]:
    """Parse an XForm into its structural schema."""
    root = parse_xml(xml)
    model = _model(root)
    data = _primary_instance_root(model)
    root_name = local_name(data.tag)

    bind_types: dict[tuple[str, ...], str] = {}
    for bind in _children(model, "bind"):
        nodeset = bind.get("nodeset")
        bind_type = bind.get("type")
        if nodeset and bind_type:
            bind_types[_nodeset_path(nodeset, root_name)] = local_name(bind_type)

    repeats: set[tuple[str, ...]] = set()
    body = _find(root, "body")
    if body is not None:
        for element in body.iter():
            if isinstance(element.tag, str) and local_name(element.tag) == "repeat":
                nodeset = element.get("nodeset")
                if nodeset:
                    repeats.add(_nodeset_path(nodeset, root_name))

    def build(element: ET.Element, prefix: tuple[str, ...]) -> list[SchemaNode]:
        nodes: list[SchemaNode] = []
        seen: set[str] = set()
        for child in element:
            if not isinstance(child.tag, str):
                continue
            name = local_name(child.tag)
            if name in seen:
                continue
            seen.add(name)
            path = prefix + (name,)
            is_repeat = path in repeats or child.get(f"{{{JAVAROSA_NS}}}template") is not None
            if is_repeat:
                nodes.append(Repeat(name=name, children=build(child, path)))
            elif len(child) > 0:
                nodes.append(Structure(name=name, children=build(child, path)))
            else:
                nodes.append(Leaf(name=name, type=bind_types.get(path, FieldType.UNKNOWN.value)))
        return nodes

    return build(data, ())


def flatten(schema: Iterable[SchemaNode], prefix: tuple[str, ...] = ()) -> list[FlatField]:
    """Dissolve structures into leaf paths; keep each repeat as one entry with relative children."""
    fields: list[FlatField] = []
    for node in schema:
        path = prefix + (node.name,)
        if isinstance(node, Leaf):
            fields.append(FlatField(path=path, type=node.type))
        elif isinstance(node, Structure):
            fields.extend(flatten(node.children, path))
        elif isinstance(node, Repeat):
            fields.append(
                FlatField(
                    path=path,
                    type=FieldType.REPEAT.value,
                    is_repeat=True,
                    children=tuple(flatten(node.children)),
                )
            )
    return fields


def get_schema_tables(schema: Iterable[SchemaNode], prefix: tuple[str, ...] = ()) -> list[str]:
    """Dotted paths of every repeat, nested repeats included, in document order."""
    tables: list[str] = []
    for node in schema:
        path = prefix + (node.name,)
        if isinstance(node, Repeat):
            tables.append(".".join(path))
        if isinstance(node, (Structure, Repeat)):
            tables.extend(get_schema_tables(node.children, path))
    return tables


def binary_fields(schema: Iterable[SchemaNode], prefix: tuple[str, ...] = ()) -> set[tuple[str, ...]]:
    """Full paths of every binary leaf (repeat paths are not indexed)."""
    paths: set[tuple[str, ...]] = set()
    for node in schema:
        path = prefix + (node.name,)
        if isinstance(node, Leaf):
            if node.type == FieldType.BINARY.value:
                paths.add(path)
        else:
            paths |= binary_fields(node.children, path)
    return paths


def inject_public_key(xml: str, public_key: str, version_suffix: str) -> tuple[str, str]:
    """
    Rewrite a form so clients encrypt against ``public_key``.

    Sets ``base64RsaPublicKey`` on the model's submission element (creating it
    when absent) and appends ``version_suffix`` to the instance version.
    Returns the new xml and the new version string.
    """
    root = parse_xml(xml)
    model = _model(root)
    data = _primary_instance_root(model)

    version = (data.get("version") or "") + version_suffix
    data.set("version", version)

    submission = next(_children(model, "submission"), None)
    if submission is None:
        namespace = model.tag[1:].split("}", 1)[0] if model.tag.startswith("{") else None
        tag = f"{{{namespace}}}submission" if namespace else "submission"
        submission = ET.SubElement(model, tag)
        submission.set("method", "form-data-post")
    submission.set("base64RsaPublicKey", public_key)

    return ET.tostring(root, encoding="unicode"), version
