"""Template store for Tessera.

Templates are Jinja2 files under the template root, named by their POSIX
path relative to it (``base.html``, ``partials/nav.html``). The store parses
each file with Jinja2 and reads the inheritance structure off the syntax
tree, so inheritance can be tracked as dependency edges and checked before
anything is rendered:

- ``{% extends "name" %}`` sets the parent (string literals only).
- ``{% block name %}...{% endblock %}`` defines an overridable block;
  ``required`` blocks must be overridden by a more-derived template.
- ``{{ super() }}`` inside a block pulls in the nearest ancestor definition.
- ``{% include %}``, ``{% import %}`` and ``{% from %}`` targets and
  ``asset("...")`` calls are collected as references. An include marked
  ``ignore missing`` is optional and a list include needs one of its names.

``resolve`` flattens a template's chain into a ``ResolvedTemplate``: the
root template's syntax tree with every block replaced by its most-derived
definition, preceded by the top-level ``set``, ``import`` and ``macro``
statements of the templates that extend it. The flattened tree has no
``extends`` and is compiled by the render engine as-is.

Key classes:
- TemplateNode: Parsed structure of one template file.
- ResolvedTemplate: Flattened render plan for one template name.
- TemplateStore: Arena of nodes by name with a resolution cache.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Optional

from jinja2 import Environment, TemplateSyntaxError, nodes

from .errors import (
    IOFailure,
    MalformedTemplate,
    TemplateCycle,
    TemplateNotFound,
    UnresolvedBlock,
)
from .logging import get_logger
from .utils import content_hash, is_ignored_name, relative_to

logger = get_logger("templates")

# Top-level statements of an extending template that still run when it renders.
CARRIED_STATEMENTS = (
    nodes.Assign,
    nodes.AssignBlock,
    nodes.Import,
    nodes.FromImport,
    nodes.Macro,
)

Replace = Callable[[nodes.Node], Optional[nodes.Node]]


@dataclass(frozen=True)
class TemplateNode:
    """Parsed structure of one template file.

    Attributes:
        name: Template name (identity).
        path: File the template was read from.
        parent: Name of the extended template, if any.
        blocks: Block definitions by name, nested ones included.
        tree: Jinja2 syntax tree of the whole file.
        references: Template names included or imported by literal.
        required: Reference groups that must exist; one name per group is enough.
        dynamic: Whether an include or import computes its name at render time.
        assets: Asset names referenced through ``asset("...")``.
    """

    name: str
    path: Path
    parent: str | None
    blocks: dict[str, nodes.Block]
    tree: nodes.Template
    references: tuple[str, ...] = ()
    required: tuple[tuple[str, ...], ...] = ()
    dynamic: bool = False
    assets: tuple[str, ...] = ()

    @property
    def statements(self) -> list[nodes.Node]:
        return [node for node in self.tree.body if isinstance(node, CARRIED_STATEMENTS)]


@dataclass(frozen=True)
class Segment:
    """One top-level entry of a render plan.

    ``kind`` is ``statement`` for a statement carried over from an extending
    template, ``block`` for a resolved block placement and ``literal`` for
    anything else in the root template.
    """

    kind: str
    origin: str
    node: nodes.Node
    name: str | None = None


@dataclass(frozen=True)
class ResolvedTemplate:
    """Flattened, cycle-free render plan for one template name.

    Attributes:
        name: Template the plan was resolved for.
        chain: Template names from ``name`` up to the root.
        segments: Top-level entries of the plan in execution order.
        tree: Jinja2 syntax tree of the whole plan.
        blocks: Resolved block nodes by name, nested ones included.
        origins: Template whose definition each block uses.
        references: Included/imported templates across the chain.
        required: Reference groups across the chain that must exist.
        dynamic: Whether the chain includes or imports computed names.
        assets: Asset names referenced across the chain.
        digest: Hash of ``name`` and the dumped tree.
    """

    name: str
    chain: tuple[str, ...]
    segments: tuple[Segment, ...]
    tree: nodes.Template
    blocks: dict[str, nodes.Block] = field(default_factory=dict)
    origins: dict[str, str] = field(default_factory=dict)
    references: tuple[str, ...] = ()
    required: tuple[tuple[str, ...], ...] = ()
    dynamic: bool = False
    assets: tuple[str, ...] = ()
    digest: str = ""

    def block(self, name: str) -> nodes.Block:
        return self.blocks[name]

    def origin(self, name: str) -> str:
        return self.origins[name]


def copy_tree(node: nodes.Node, replace: Replace | None = None) -> nodes.Node:
    """Deep-copy a syntax tree.

    ``replace`` sees every node on the way down; returning a node substitutes
    it (children are not visited), returning None copies the node.
    """
    if replace is not None:
        substitute = replace(node)
        if substitute is not None:
            return substitute
    copy = object.__new__(type(node))
    for attr in node.attributes:
        setattr(copy, attr, getattr(node, attr, None))
    for name, value in node.iter_fields():
        setattr(copy, name, _copy_value(value, replace))
    return copy


def _copy_value(value, replace):
    if isinstance(value, nodes.Node):
        return copy_tree(value, replace)
    if isinstance(value, list):
        return [_copy_value(item, replace) for item in value]
    return value


def _is_string(expr) -> bool:
    return isinstance(expr, nodes.Const) and isinstance(expr.value, str)


def _is_call_to(call: nodes.Call, name: str) -> bool:
    return isinstance(call.node, nodes.Name) and call.node.name == name


def _template_names(expr: nodes.Expr) -> tuple[str, ...] | None:
    """Literal template names of an include or import target, or None if computed."""
    if _is_string(expr):
        return (expr.value,)
    if isinstance(expr, nodes.Const) and isinstance(expr.value, (list, tuple)):
        if all(isinstance(value, str) for value in expr.value):
            return tuple(expr.value)
        return None
    if isinstance(expr, (nodes.List, nodes.Tuple)) and all(_is_string(item) for item in expr.items):
        return tuple(item.value for item in expr.items)
    return None


def _parent(tree: nodes.Template, path: Path) -> str | None:
    found = list(tree.find_all(nodes.Extends))
    if not found:
        return None
    if len(found) > 1:
        raise MalformedTemplate("template extends more than one parent", path)
    extends = found[0]
    if not any(statement is extends for statement in tree.body):
        raise MalformedTemplate("extends must be a top-level tag", path)
    if not _is_string(extends.template):
        raise MalformedTemplate("extends must name a template as a string literal", path)
    return extends.template.value


def parse_template(
    name: str,
    source: str,
    path: Path,
    environment: Environment | None = None,
) -> TemplateNode:
    """Parse one template and read its inheritance structure.

    Raises:
        MalformedTemplate: On Jinja2 syntax errors, duplicate blocks, or a
            dynamic, repeated or nested ``extends``.
    """
    environment = environment or Environment(keep_trailing_newline=True)
    try:
        tree = environment.parse(source, name, str(path))
    except TemplateSyntaxError as exc:
        raise MalformedTemplate(
            f"template syntax error on line {exc.lineno} of '{name}': {exc.message}", path
        ) from exc

    parent = _parent(tree, path)
    blocks: dict[str, nodes.Block] = {}
    for block in tree.find_all(nodes.Block):
        if block.name in blocks:
            raise MalformedTemplate(f"block '{block.name}' defined twice", path)
        blocks[block.name] = block

    references: list[str] = []
    required: list[tuple[str, ...]] = []
    dynamic = False
    for statement in tree.find_all((nodes.Include, nodes.Import, nodes.FromImport)):
        names = _template_names(statement.template)
        if names is None:
            dynamic = True
            continue
        references.extend(names)
        if names and not getattr(statement, "ignore_missing", False):
            required.append(names)

    assets = [
        call.args[0].value
        for call in tree.find_all(nodes.Call)
        if _is_call_to(call, "asset") and call.args and _is_string(call.args[0])
    ]
    return TemplateNode(
        name=name,
        path=path,
        parent=parent,
        blocks=blocks,
        tree=tree,
        references=tuple(dict.fromkeys(references)),
        required=tuple(dict.fromkeys(required)),
        dynamic=dynamic,
        assets=tuple(dict.fromkeys(assets)),
    )


def _self_call(name: str, lineno: int) -> nodes.Output:
    """``{{ self.name() }}``"""
    target = nodes.Getattr(nodes.Name("self", "load"), name, "load")
    return nodes.Output([nodes.Call(target, [], [], None, None)], lineno=lineno)


class _Resolution:
    """Flattens one inheritance chain; nodes[0] is the most-derived template.

    ``super()`` in a block becomes a call to a private top-level macro that
    renders the ancestor definition. Blocks only reachable through
    ``self.name()`` are compiled under a branch that never runs.
    """

    def __init__(self, chain_nodes: list[TemplateNode]):
        self.nodes = chain_nodes
        self.chain = tuple(node.name for node in chain_nodes)
        self.target = chain_nodes[0]
        self.placed: dict[str, nodes.Block] = {}
        self.origins: dict[str, str] = {}
        self.supers: dict[tuple[str, int], nodes.Macro] = {}

    def run(self) -> ResolvedTemplate:
        root = self.nodes[-1]
        segments: list[Segment] = []
        for node in self.nodes[:-1]:
            for statement in node.statements:
                segments.append(Segment("statement", node.name, self._copy(statement)))
        for statement in root.tree.body:
            copy = self._copy(statement)
            if isinstance(statement, nodes.Block):
                segments.append(Segment("block", self.origins[statement.name], copy, statement.name))
            else:
                segments.append(Segment("literal", root.name, copy))

        hidden = self._hidden_blocks([segment.node for segment in segments])
        body: list[nodes.Node] = list(self.supers.values())
        body.extend(segment.node for segment in segments)
        if hidden:
            body.append(nodes.If(nodes.Const(False), hidden, [], []))
        tree = nodes.Template(body, lineno=1)
        tree.set_lineno(1)

        references: list[str] = []
        required: list[tuple[str, ...]] = []
        assets: list[str] = []
        for node in self.nodes:
            references.extend(node.references)
            required.extend(node.required)
            assets.extend(node.assets)
        return ResolvedTemplate(
            name=self.target.name,
            chain=self.chain,
            segments=tuple(segments),
            tree=tree,
            blocks=dict(self.placed),
            origins=dict(self.origins),
            references=tuple(dict.fromkeys(references)),
            required=tuple(dict.fromkeys(required)),
            dynamic=any(node.dynamic for node in self.nodes),
            assets=tuple(dict.fromkeys(assets)),
            digest=content_hash(f"{self.target.name}\n{tree.dump()}".encode("utf-8")),
        )

    def _unresolved(self, block: str) -> UnresolvedBlock:
        return UnresolvedBlock(self.target.name, block, self.chain, self.target.path)

    def _definition(self, name: str, start: int) -> tuple[int, nodes.Block]:
        for level in range(start, len(self.nodes)):
            block = self.nodes[level].blocks.get(name)
            if block is not None and not block.required:
                return level, block
        raise self._unresolved(name)

    def _copy(self, statement: nodes.Node) -> nodes.Node:
        def replace(node: nodes.Node) -> nodes.Node | None:
            if isinstance(node, nodes.Block):
                return self._place(node)
            return None

        return copy_tree(statement, replace)

    def _place(self, placement: nodes.Block) -> nodes.Node:
        name = placement.name
        if name in self.placed:
            # A block may only be compiled once; later placements render it.
            return _self_call(name, placement.lineno)
        level, definition = self._definition(name, 0)
        block = nodes.Block(name, [], placement.scoped, False, lineno=placement.lineno)
        self.placed[name] = block
        self.origins[name] = self.nodes[level].name
        block.body = self._body(definition, level, in_macro=False)
        return block

    def _body(self, definition: nodes.Block, level: int, in_macro: bool) -> list[nodes.Node]:
        name = definition.name

        def replace(node: nodes.Node) -> nodes.Node | None:
            if isinstance(node, nodes.Block):
                if in_macro:
                    return _self_call(node.name, node.lineno)
                return self._place(node)
            if isinstance(node, nodes.Call) and _is_call_to(node, "super") and not node.args:
                macro = self._super(name, level + 1)
                return nodes.Call(nodes.Name(macro, "load"), [], [], None, None, lineno=node.lineno)
            return None

        return [copy_tree(child, replace) for child in definition.body]

    def _super(self, name: str, start: int) -> str:
        level, definition = self._definition(name, start)
        macro_name = f"_super_{name}_{level}"
        if (name, level) not in self.supers:
            macro = nodes.Macro(macro_name, [], [], [], lineno=definition.lineno)
            self.supers[(name, level)] = macro
            macro.body = self._body(definition, level, in_macro=True)
        return macro_name

    def _hidden_blocks(self, placed: list[nodes.Node]) -> list[nodes.Block]:
        """Resolve blocks that are only rendered through ``self.name()``."""
        hidden: list[nodes.Block] = []
        pending = placed + list(self.supers.values())
        seen_supers = len(self.supers)
        while pending:
            referenced: list[str] = []
            for node in pending:
                for getattr_node in node.find_all(nodes.Getattr):
                    if isinstance(getattr_node.node, nodes.Name) and getattr_node.node.name == "self":
                        referenced.append(getattr_node.attr)
            pending = []
            for name in dict.fromkeys(referenced):
                if name in self.placed:
                    continue
                if not any(name in node.blocks for node in self.nodes):
                    raise self._unresolved(name)
                level, definition = self._definition(name, 0)
                block = nodes.Block(name, [], definition.scoped, False, lineno=definition.lineno)
                self.placed[name] = block
                self.origins[name] = self.nodes[level].name
                block.body = self._body(definition, level, in_macro=False)
                hidden.append(block)
                pending.append(block)
            new_supers = list(self.supers.values())[seen_supers:]
            seen_supers = len(self.supers)
            pending.extend(new_supers)
        return hidden


class TemplateStore:
    """Arena of parsed templates indexed by name, with cached resolutions.

    Parent links are stored as names and looked up in the arena, so a cycle
    in the inheritance graph is only ever a repeated name during a chain
    walk. All methods are safe to call from several threads.

    Attributes:
        root: Directory holding the template files.
        environment: Jinja2 environment whose syntax templates are parsed with.
    """

    def __init__(self, root: Path, environment: Environment | None = None):
        self.root = root
        self.environment = environment or Environment(keep_trailing_newline=True)
        self._nodes: dict[str, TemplateNode] = {}
        self._resolved: dict[str, ResolvedTemplate] = {}
        self._generations: dict[str, int] = {}
        self._lock = threading.RLock()

    def names(self) -> list[str]:
        """Return every template name under the root, sorted."""
        if not self.root.exists():
            return []
        names = []
        for path in self.root.rglob("*"):
            if path.is_dir():
                continue
            name = self.name_for(path)
            if name is not None:
                names.append(name)
        return sorted(names)

    def name_for(self, path: Path) -> str | None:
        """Return the template name for a file path, or None if it is not a template."""
        rel = relative_to(path, self.root)
        if rel is None or not rel.parts:
            return None
        if any(is_ignored_name(part) and not part.startswith("_") for part in rel.parts):
            return None
        return rel.as_posix()

    def path_for(self, name: str) -> Path:
        return self.root / name

    def exists(self, name: str) -> bool:
        with self._lock:
            if name in self._nodes:
                return True
        return self._safe_path(name) is not None and self.path_for(name).is_file()

    def load(self, name: str, referrer: Path | None = None) -> TemplateNode:
        """Return the parsed node for *name*, reading it on first use.

        Raises:
            TemplateNotFound: If no readable file exists for the name.
            MalformedTemplate: If the file does not parse.
        """
        with self._lock:
            node = self._nodes.get(name)
            if node is not None:
                return node
            node = self._read(name, referrer)
            self._nodes[name] = node
            self._generations.setdefault(name, 0)
            return node

    def reload(self, name: str) -> TemplateNode:
        """Re-read a template and drop every resolution whose chain contains it."""
        with self._lock:
            self._invalidate(name)
            self._nodes.pop(name, None)
            self._generations[name] = self._generations.get(name, 0) + 1
            node = self._read(name, None)
            self._nodes[name] = node
            logger.debug("Reloaded template %s", name)
            return node

    def forget(self, name: str) -> None:
        """Remove a deleted template from the arena."""
        with self._lock:
            self._invalidate(name)
            self._nodes.pop(name, None)
            self._generations[name] = self._generations.get(name, 0) + 1

    def generation(self, name: str) -> int:
        with self._lock:
            return self._generations.get(name, 0)

    def is_cached(self, name: str) -> bool:
        with self._lock:
            return name in self._resolved

    def resolve(self, name: str) -> ResolvedTemplate:
        """Flatten the inheritance chain of *name* into a render plan.

        Raises:
            TemplateCycle: If the chain revisits a template.
            TemplateNotFound: If a template in the chain does not exist.
            UnresolvedBlock: If a used block has no definition in the chain.
            MalformedTemplate: If a template in the chain is malformed.
        """
        with self._lock:
            cached = self._resolved.get(name)
            if cached is not None:
                return cached
            chain_nodes = self._chain(name)
            resolved = _Resolution(chain_nodes).run()
            self._resolved[name] = resolved
            return resolved

    def resolve_all(self) -> dict[str, ResolvedTemplate]:
        """Load and resolve every template under the root."""
        return {name: self.resolve(name) for name in self.names()}

    def clear(self) -> None:
        with self._lock:
            self._nodes.clear()
            self._resolved.clear()
            for name in self._generations:
                self._generations[name] += 1

    def _chain(self, name: str) -> list[TemplateNode]:
        chain: list[str] = []
        chain_nodes: list[TemplateNode] = []
        current: str | None = name
        referrer: Path | None = None
        while current is not None:
            if current in chain:
                raise TemplateCycle(chain + [current], self.path_for(name))
            chain.append(current)
            node = self.load(current, referrer)
            chain_nodes.append(node)
            referrer = node.path
            current = node.parent
        return chain_nodes

    def _invalidate(self, name: str) -> None:
        stale = [key for key, plan in self._resolved.items() if name in plan.chain]
        for key in stale:
            del self._resolved[key]

    def _safe_path(self, name: str) -> Path | None:
        path = self.path_for(name)
        if relative_to(path.resolve(), self.root.resolve()) is None:
            return None
        return path

    def _read(self, name: str, referrer: Path | None) -> TemplateNode:
        path = self._safe_path(name)
        if path is None or not path.is_file():
            raise TemplateNotFound(name, referrer or self.path_for(name))
        try:
            source = path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as exc:
            raise IOFailure(
                f"cannot read template '{name}': {exc}", path, fatal=True
            ) from exc
        return parse_template(name, source, path, self.environment)
