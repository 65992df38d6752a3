"""Embed pre-rendered fragments into Graphviz layouts."""
from __future__ import annotations

import asyncio
import logging
import math
import re
import shutil
import subprocess
import xml.etree.ElementTree as ET
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Mapping, Optional, Set, Tuple, Union

import pydot

logger = logging.getLogger(__name__)

SVG_NS = "http://www.w3.org/2000/svg"
XHTML_NS = "http://www.w3.org/1999/xhtml"
XLINK_NS = "http://www.w3.org/1999/xlink"
ET.register_namespace("", SVG_NS)
ET.register_namespace("xlink", XLINK_NS)
ET.register_namespace("xhtml", XHTML_NS)

# Graphviz sizes are in inches; one inch is 72 points.
GRAPHVIZ_PPI = 72

# Node statements pydot creates for `node [...]` style defaults.
_DEFAULT_STATEMENTS = {"node", "edge", "graph"}


class DotGraftError(Exception):
    """Base error with a stable code for CLI mapping."""

    code = "E_DOTGRAFT"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def __str__(self) -> str:
        return self.message


class NodeNotFound(DotGraftError):
    code = "E_NODE_NOT_FOUND"

    def __init__(self, node_id: str) -> None:
        super().__init__(
            f'node id "{node_id}" provided for embedding, but no such node id exists in the graph'
        )
        self.node_id = node_id


class DuplicateNodeId(DotGraftError):
    code = "E_DUPLICATE_NODE_ID"

    def __init__(self, node_id: str) -> None:
        super().__init__(f'node id "{node_id}" is shared by more than one node in the graph')
        self.node_id = node_id


class RenderedNodeMissing(DotGraftError):
    code = "E_RENDERED_NODE_MISSING"

    def __init__(self, node_id: str) -> None:
        super().__init__(f'failed to find rendered SVG polygon for node id "{node_id}"')
        self.node_id = node_id


class EngineLoadFailure(DotGraftError):
    code = "E_ENGINE_LOAD"


class LayoutFailure(DotGraftError):
    code = "E_LAYOUT_FAILED"


class MalformedOutput(DotGraftError):
    code = "E_MALFORMED_OUTPUT"


class DotParseError(DotGraftError):
    code = "E_PARSE_DOT"


class FragmentError(DotGraftError):
    code = "E_FRAGMENT"


@dataclass
class Fragment:
    """A visual element with a measured size in device pixels."""

    element: ET.Element
    width: float
    height: float

    def __post_init__(self) -> None:
        if self.width < 0 or self.height < 0:
            raise FragmentError(
                f"fragment size must be non-negative, got {_fmt(self.width)}x{_fmt(self.height)}"
            )

    def measure(self) -> Tuple[float, float]:
        return self.width, self.height

    @classmethod
    def from_svg(cls, svg_text: str) -> "Fragment":
        """Wrap a standalone SVG document, sized from width/height or its viewBox."""
        try:
            root = ET.fromstring(svg_text)
        except ET.ParseError as exc:
            raise FragmentError(f"failed to parse fragment SVG: {exc}") from exc
        if _local_name(root.tag) != "svg":
            raise FragmentError(f"fragment root must be <svg>, got <{_local_name(root.tag)}>")
        width = _parse_length(root.get("width"), None)
        height = _parse_length(root.get("height"), None)
        if width is None or height is None:
            view_box = root.get("viewBox")
            parts = re.split(r"[ ,]+", view_box.strip()) if view_box else []
            if len(parts) != 4:
                raise FragmentError("fragment SVG needs width/height or a viewBox")
            try:
                vb_width, vb_height = float(parts[2]), float(parts[3])
            except ValueError as exc:
                raise FragmentError(f"invalid fragment viewBox: {view_box!r}") from exc
            width = vb_width if width is None else width
            height = vb_height if height is None else height
        return cls(root, width, height)


@dataclass(frozen=True)
class PlacementRect:
    x: float
    y: float
    width: float
    height: float


@dataclass
class NodeIndex:
    """Node ids mapped to the last statement declaring that node.

    DOT allows one node to be declared by several statements; ``statements``
    holds all of them, keyed by id, in declaration order.
    """

    nodes: Dict[str, pydot.Node] = field(default_factory=dict)
    statements: Dict[str, List[pydot.Node]] = field(default_factory=dict)
    duplicates: Set[str] = field(default_factory=set)

    def get(self, node_id: str) -> Optional[pydot.Node]:
        return self.nodes.get(node_id)

    def get_statements(self, node_id: str) -> List[pydot.Node]:
        return self.statements.get(node_id, [])

    def __contains__(self, node_id: object) -> bool:
        return node_id in self.nodes

    def __len__(self) -> int:
        return len(self.nodes)


Embeddings = Mapping[str, Fragment]
DotInput = Union[str, pydot.Dot]


def parse_dot(dot_text: str) -> pydot.Dot:
    try:
        graphs = pydot.graph_from_dot_data(dot_text)
    except Exception as exc:
        raise DotParseError(f"failed to parse DOT input: {exc}") from exc
    if not graphs:
        raise DotParseError("failed to parse DOT input: no graph found")
    if len(graphs) > 1:
        logger.debug("DOT input holds %d graphs; using the first", len(graphs))
    return graphs[0]


def index_nodes(graph: pydot.Graph) -> NodeIndex:
    """Map each node's ``id`` attribute to the node, across all subgraphs."""
    by_name: Dict[str, List[pydot.Node]] = {}
    for node in _iter_nodes(graph):
        by_name.setdefault(_unquote(node.get_name()), []).append(node)

    index = NodeIndex()
    owners: Dict[str, str] = {}
    for name, statements in by_name.items():
        node_id: Optional[str] = None
        for statement in statements:
            raw_id = statement.get("id")
            if raw_id is not None:
                node_id = _unquote(str(raw_id))
        if not node_id:
            continue
        if node_id in owners and owners[node_id] != name:
            index.duplicates.add(node_id)
        owners[node_id] = name
        index.nodes[node_id] = statements[-1]
        index.statements[node_id] = statements
    return index


def _iter_nodes(graph: pydot.Graph):
    for node in graph.get_nodes():
        if _unquote(node.get_name()) in _DEFAULT_STATEMENTS:
            continue
        yield node
    for subgraph in graph.get_subgraphs():
        yield from _iter_nodes(subgraph)


def inject_sizes(graph: pydot.Dot, embeddings: Embeddings) -> None:
    """Make Graphviz reserve an exact, invisible rectangle for every embedded node."""
    index = index_nodes(graph)
    resolved: List[Tuple[List[pydot.Node], Fragment]] = []
    for node_id, fragment in embeddings.items():
        if node_id not in index:
            raise NodeNotFound(node_id)
        if node_id in index.duplicates:
            raise DuplicateNodeId(node_id)
        resolved.append((index.get_statements(node_id), fragment))

    graph.set("bgcolor", "invis")

    for statements, fragment in resolved:
        width_px, height_px = fragment.measure()
        overrides = {
            "width": str(width_px / GRAPHVIZ_PPI),
            "height": str(height_px / GRAPHVIZ_PPI),
            "fixedsize": "true",
            # rect always renders as a <polygon>
            "shape": "rect",
            "color": "invis",
            "label": '""',
        }
        # Later statements of the same node would otherwise win in Graphviz.
        for statement in statements:
            for key, value in overrides.items():
                statement.set(key, value)


def parse_polygon_points(points: str) -> List[Tuple[float, float]]:
    numbers = re.findall(r"[-+]?(?:\d+\.?\d*|\.\d+)(?:[eE][-+]?\d+)?", points or "")
    if len(numbers) % 2:
        raise MalformedOutput(f"polygon points have an odd number of coordinates: {points!r}")
    values = [float(n) for n in numbers]
    return list(zip(values[0::2], values[1::2]))


def polygon_bounds(points: List[Tuple[float, float]]) -> PlacementRect:
    """Axis-aligned bounding box of a polygon."""
    if not points:
        raise MalformedOutput("rendered polygon has no vertices")
    min_x = max_x = points[0][0]
    min_y = max_y = points[0][1]
    for x, y in points[1:]:
        min_x = min(min_x, x)
        max_x = max(max_x, x)
        min_y = min(min_y, y)
        max_y = max(max_y, y)
    return PlacementRect(x=min_x, y=min_y, width=max_x - min_x, height=max_y - min_y)


def compose(svg_text: str, embeddings: Embeddings) -> ET.Element:
    """Graft each fragment next to its node's polygon in Graphviz SVG output."""
    try:
        root = ET.fromstring(svg_text)
    except ET.ParseError as exc:
        raise MalformedOutput(f"layout engine output is not valid SVG: {exc}") from exc
    if _local_name(root.tag) != "svg":
        raise MalformedOutput(
            f"layout engine output root is <{_local_name(root.tag)}>, expected <svg>"
        )
    return embed_fragments(root, embeddings)


def embed_fragments(root: ET.Element, embeddings: Embeddings) -> ET.Element:
    """Graft fragments into an already parsed document.

    Every node is located before anything is grafted, so a failure leaves
    ``root`` unchanged.
    """
    placements: List[Tuple[ET.Element, PlacementRect, Fragment]] = []
    for node_id, fragment in embeddings.items():
        parent, polygon = _find_node_polygon(root, node_id)
        rect = polygon_bounds(parse_polygon_points(polygon.get("points", "")))
        logger.debug(
            "placing %s at (%s, %s) in %sx%s polygon",
            node_id,
            _fmt(rect.x),
            _fmt(rect.y),
            _fmt(rect.width),
            _fmt(rect.height),
        )
        placements.append((parent, rect, fragment))

    for parent, rect, fragment in placements:
        width, height = fragment.measure()
        container = ET.Element(
            _q("foreignObject"),
            {
                "width": f"{_fmt(width)}px",
                "height": f"{_fmt(height)}px",
                "transform": f"translate({_fmt(rect.x)} {_fmt(rect.y)})",
            },
        )
        container.append(fragment.element)
        parent.append(container)
    return root


def _find_node_polygon(root: ET.Element, node_id: str) -> Tuple[ET.Element, ET.Element]:
    for candidate in root.iter():
        if candidate.get("id") != node_id:
            continue
        for parent in candidate.iter():
            for child in parent:
                if child.tag == _q("polygon"):
                    return parent, child
    raise RenderedNodeMissing(node_id)


def render_with_embeddings(
    dot: DotInput,
    embeddings: Embeddings,
    svg_from_dot: Callable[[str], str],
) -> ET.Element:
    graph = parse_dot(dot) if isinstance(dot, str) else dot
    inject_sizes(graph, embeddings)
    svg_text = svg_from_dot(graph.to_string())
    return compose(svg_text, embeddings)


class GraphvizLayout:
    """Runs the Graphviz ``dot`` executable."""

    def __init__(self, dot_path: Optional[str] = None) -> None:
        self.dot_path = dot_path
        self.version: Optional[str] = None

    @property
    def loaded(self) -> bool:
        return self.version is not None

    @classmethod
    async def load(cls, dot_path: Optional[str] = None) -> "GraphvizLayout":
        layout = cls(dot_path)
        await layout.ensure_loaded()
        return layout

    async def ensure_loaded(self) -> None:
        if self.loaded:
            return
        resolved = shutil.which(self.dot_path or "dot")
        if not resolved:
            raise EngineLoadFailure(
                f"Graphviz executable not found: {self.dot_path or 'dot'}"
            )
        try:
            proc = await asyncio.create_subprocess_exec(
                resolved,
                "-V",
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
            stdout, stderr = await proc.communicate()
        except OSError as exc:
            raise EngineLoadFailure(f"failed to execute Graphviz at {resolved}: {exc}") from exc
        if proc.returncode != 0:
            raise EngineLoadFailure(
                f"Graphviz at {resolved} failed to start: {_truncate(stderr.decode(errors='replace'))}"
            )
        # dot -V reports on stderr
        self.version = (stderr or stdout).decode(errors="replace").strip()
        self.dot_path = resolved
        logger.debug("loaded %s", self.version)

    def render_svg(self, dot_text: str) -> str:
        if not self.loaded:
            raise EngineLoadFailure("Graphviz layout used before load()")
        try:
            proc = subprocess.run(
                [self.dot_path, "-Tsvg"],
                input=dot_text,
                text=True,
                capture_output=True,
                check=False,
            )
        except OSError as exc:
            raise LayoutFailure(f"failed to execute Graphviz: {exc}") from exc
        if proc.returncode != 0:
            raise LayoutFailure(
                f"Graphviz failed: {_truncate(proc.stderr) or 'unknown error'}"
            )
        return proc.stdout


class EmbeddingRenderer:
    """Renders DOT graphs with embedded fragments using one loaded Graphviz."""

    def __init__(self, layout: GraphvizLayout) -> None:
        self.layout = layout

    @classmethod
    async def load(cls, dot_path: Optional[str] = None) -> "EmbeddingRenderer":
        return cls(await GraphvizLayout.load(dot_path))

    def render(self, dot: DotInput, embeddings: Embeddings) -> ET.Element:
        return render_with_embeddings(dot, embeddings, self.layout.render_svg)

    def render_svg(self, dot: DotInput, embeddings: Embeddings) -> str:
        return to_svg_text(self.render(dot, embeddings))


def to_svg_text(element: ET.Element) -> str:
    # No ET.indent: whitespace inside embedded <pre> blocks is significant.
    return ET.tostring(element, encoding="unicode")


def _truncate(detail: str, limit: int = 240) -> str:
    detail = (detail or "").strip()
    if len(detail) > limit:
        return detail[:limit] + "..."
    return detail


def _unquote(value: str) -> str:
    if len(value) >= 2 and value[0] == value[-1] == '"':
        return value[1:-1].replace('\\"', '"')
    return value


def _q(tag: str) -> str:
    return f"{{{SVG_NS}}}{tag}"


def _local_name(tag: str) -> str:
    if isinstance(tag, str) and tag.startswith("{"):
        return tag.split("}", 1)[1]
    return tag


def _parse_length(value: Optional[str], default: Optional[float]) -> Optional[float]:
    if value is None:
        return default
    match = re.match(r"^-?\d+(?:\.\d+)?", value.strip())
    if match:
        return float(match.group(0))
    return default


def _fmt(value: float) -> str:
    if math.isclose(value, round(value)):
        return str(int(round(value)))
    return f"{value:.3f}".rstrip("0").rstrip(".")
