from __future__ import annotations

from collections.abc import Iterator
from dataclasses import dataclass

from tree_sitter import Node
from tree_sitter import Tree
from tree_sitter_language_pack import get_parser

from crate_index.errors import ParseFailureError
from crate_index.indexing.models import DefinitionDraft
from crate_index.indexing.models import MemberDraft
from crate_index.indexing.models import ParentAnchor
from crate_index.storage.models import Kind

_KIND_BY_NODE: dict[str, Kind] = {
    "function_item": Kind.FUNCTION,
    "function_signature_item": Kind.FUNCTION,
    "struct_item": Kind.STRUCT,
    "enum_item": Kind.ENUM,
    "trait_item": Kind.TRAIT,
    "macro_definition": Kind.MACRO,
    "type_item": Kind.TYPE_ALIAS,
    "associated_type": Kind.TYPE_ALIAS,
    "const_item": Kind.CONSTANT,
    "static_item": Kind.CONSTANT,
    "impl_item": Kind.IMPL,
}

_unmapped = set(Kind) - set(_KIND_BY_NODE.values())
if _unmapped:
    raise RuntimeError(f"Kinds without a parser node mapping: {sorted(k.value for k in _unmapped)}")

_PATH_KEYWORDS = {"self", "super", "crate"}


@dataclass(frozen=True)
class ParsedFile:
    path: str
    definitions: list[DefinitionDraft]
    reexports: list[str]


def iter_definitions(path: str, source: bytes) -> Iterator[DefinitionDraft]:
    tree = _parse(path=path, source=source)
    yield from _walk(path=path, root=tree.root_node)


def parse_file(path: str, source: bytes) -> ParsedFile:
    tree = _parse(path=path, source=source)
    return ParsedFile(
        path=path,
        definitions=list(_walk(path=path, root=tree.root_node)),
        reexports=_reexport_roots(tree=tree),
    )


def reexport_roots(path: str, source: bytes) -> list[str]:
    tree = _parse(path=path, source=source)
    return _reexport_roots(tree=tree)


def _parse(path: str, source: bytes) -> Tree:
    try:
        source.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise ParseFailureError(f"{path}: not valid UTF-8 ({exc.reason} at byte {exc.start})") from exc
    tree = get_parser("rust").parse(source)
    if tree.root_node.has_error:
        line = _first_error_line(root=tree.root_node)
        raise ParseFailureError(f"{path}: syntax error near line {line}")
    return tree


def _first_error_line(root: Node) -> int:
    stack: list[Node] = [root]
    while stack:
        node = stack.pop()
        if node.type == "ERROR" or node.is_missing:
            return node.start_point[0] + 1
        stack.extend(reversed([c for c in node.children if c.has_error or c.is_missing]))
    return root.start_point[0] + 1


def _walk(path: str, root: Node) -> Iterator[DefinitionDraft]:
    stack: list[Node] = [root]
    while stack:
        node = stack.pop()
        kind = _KIND_BY_NODE.get(node.type)
        if kind is not None:
            draft = _build_draft(path=path, node=node, kind=kind)
            if draft is not None:
                yield draft
        stack.extend(reversed(node.named_children))


def _build_draft(path: str, node: Node, kind: Kind) -> DefinitionDraft | None:
    trait_name: str | None = None
    if kind is Kind.IMPL:
        type_node = node.child_by_field_name("type")
        if type_node is None:
            return None
        name = _collapse(_text(type_node))
        trait_node = node.child_by_field_name("trait")
        if trait_node is not None:
            trait_name = _collapse(_text(trait_node))
    else:
        name_node = node.child_by_field_name("name")
        if name_node is None:
            return None
        name = _text(name_node)

    owner = _owner(node=node)
    visibility = _visibility(node=node)
    if visibility == "private" and owner is not None and owner.type == "trait_item":
        visibility = _visibility(node=owner)

    parent: ParentAnchor | None = None
    if owner is not None:
        parent = (_KIND_BY_NODE[owner.type], owner.start_byte, owner.end_byte)

    return DefinitionDraft(
        kind=kind,
        name=name,
        path=path,
        start_line=node.start_point[0] + 1,
        end_line=node.end_point[0] + 1,
        start_byte=node.start_byte,
        end_byte=node.end_byte,
        signature=_signature(node=node, name=name),
        docs=_collect_docs(node=node),
        visibility=visibility,
        parent=parent,
        trait_name=trait_name,
        qualifier=_qualifier(node=node),
        members=_members(node=node),
    )


def _owner(node: Node) -> Node | None:
    container = node.parent
    if container is None or container.type != "declaration_list":
        return None
    owner = container.parent
    if owner is None or owner.type not in ("impl_item", "trait_item"):
        return None
    return owner


def _signature(node: Node, name: str) -> str:
    if node.type == "macro_definition":
        return f"macro_rules! {name}"
    cut = node.end_byte
    if node.type in ("const_item", "static_item"):
        value = node.child_by_field_name("value")
        if value is not None:
            cut = value.start_byte
    else:
        body = node.child_by_field_name("body")
        if body is not None and body.type != "ordered_field_declaration_list":
            cut = body.start_byte
    text = node.text[: cut - node.start_byte].decode("utf-8").rstrip()
    if text.endswith(";"):
        text = text[:-1].rstrip()
    if text.endswith("="):
        text = text[:-1].rstrip()
    return text


def _qualifier(node: Node) -> str | None:
    if node.type == "const_item":
        return "const"
    if node.type == "static_item":
        if any(child.type == "mutable_specifier" for child in node.children):
            return "static mut"
        return "static"
    if node.type == "macro_definition":
        return "macro_rules"
    return None


def _visibility(node: Node) -> str:
    for child in node.children:
        if child.type == "visibility_modifier":
            return _collapse(_text(child))
    return "private"


def _collect_docs(node: Node) -> str | None:
    docs: list[str] = []
    sibling = node.prev_named_sibling
    while sibling is not None:
        if sibling.type == "attribute_item":
            doc = _doc_attribute(attribute_item=sibling)
            if doc is not None:
                docs.append(doc)
        elif sibling.type == "line_comment":
            text = _text(sibling).rstrip("\r\n")
            if not text.startswith("///") or text.startswith("////"):
                break
            docs.append(_strip_one_space(text[3:]))
        elif sibling.type == "block_comment":
            text = _text(sibling)
            if not text.startswith("/**") or text.startswith("/***") or text == "/**/":
                break
            docs.append(_block_doc(text=text))
        else:
            break
        sibling = sibling.prev_named_sibling
    if not docs:
        return None
    docs.reverse()
    return "\n".join(docs)


def _doc_attribute(attribute_item: Node) -> str | None:
    attribute = next((c for c in attribute_item.named_children if c.type == "attribute"), None)
    if attribute is None or not attribute.named_children:
        return None
    if _text(attribute.named_children[0]) != "doc":
        return None
    value = attribute.child_by_field_name("value")
    if value is None:
        return None
    raw = _text(value)
    if len(raw) >= 2 and raw.startswith('"') and raw.endswith('"'):
        raw = raw[1:-1]
    return _strip_one_space(raw)


def _block_doc(text: str) -> str:
    lines: list[str] = []
    for line in text[3:-2].splitlines():
        stripped = line.strip()
        if stripped.startswith("*"):
            stripped = _strip_one_space(stripped[1:])
        lines.append(stripped)
    while lines and not lines[0]:
        lines.pop(0)
    while lines and not lines[-1]:
        lines.pop()
    return "\n".join(lines)


def _members(node: Node) -> tuple[MemberDraft, ...]:
    body = node.child_by_field_name("body")
    if body is None:
        return ()
    if node.type == "struct_item":
        return _field_members(body=body)
    if node.type != "enum_item":
        return ()
    members: list[MemberDraft] = []
    for variant in body.named_children:
        if variant.type != "enum_variant":
            continue
        name_node = variant.child_by_field_name("name")
        if name_node is None:
            continue
        payload = variant.child_by_field_name("body")
        value = variant.child_by_field_name("value")
        detail: str | None = None
        if payload is not None:
            detail = _collapse(_text(payload))
        elif value is not None:
            detail = f"= {_collapse(_text(value))}"
        members.append(MemberDraft(name=_text(name_node), detail=detail, docs=_collect_docs(node=variant)))
    return tuple(members)


def _field_members(body: Node) -> tuple[MemberDraft, ...]:
    if body.type == "ordered_field_declaration_list":
        return tuple(
            MemberDraft(name=str(index), detail=_collapse(_text(type_node)))
            for index, type_node in enumerate(body.children_by_field_name("type"))
        )
    members: list[MemberDraft] = []
    for field_node in body.named_children:
        if field_node.type != "field_declaration":
            continue
        name_node = field_node.child_by_field_name("name")
        type_node = field_node.child_by_field_name("type")
        if name_node is None:
            continue
        members.append(
            MemberDraft(
                name=_text(name_node),
                detail=_collapse(_text(type_node)) if type_node is not None else None,
                docs=_collect_docs(node=field_node),
            )
        )
    return tuple(members)


def _reexport_roots(tree: Tree) -> list[str]:
    roots: list[str] = []
    for node in tree.root_node.named_children:
        if node.type != "use_declaration":
            continue
        if _visibility(node=node) != "pub":
            continue
        segment = _leading_segment(node=node.child_by_field_name("argument"))
        if segment is None:
            continue
        root = segment.replace("_", "-")
        if root not in roots:
            roots.append(root)
    return roots


def _leading_segment(node: Node | None) -> str | None:
    while node is not None:
        if node.type == "identifier":
            text = _text(node)
            return None if text in _PATH_KEYWORDS else text
        if node.type in _PATH_KEYWORDS:
            return None
        if node.type == "scoped_identifier" and node.child_by_field_name("path") is None:
            # `::serde::X`：最内层没有 path，name 就是 crate 名
            node = node.child_by_field_name("name")
        elif node.type in ("scoped_identifier", "scoped_use_list", "use_as_clause"):
            node = node.child_by_field_name("path")
        elif node.type == "use_wildcard":
            node = node.named_children[0] if node.named_children else None
        else:
            return None
    return None


def _strip_one_space(text: str) -> str:
    return text[1:] if text.startswith(" ") else text


def _collapse(text: str) -> str:
    return " ".join(text.split())


def _text(node: Node) -> str:
    return node.text.decode("utf-8")
