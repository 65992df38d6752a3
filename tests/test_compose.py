from __future__ import annotations

import re
import sys
import unittest
import xml.etree.ElementTree as ET
from pathlib import Path

TESTS_DIR = Path(__file__).resolve().parent
PROJECT_ROOT = TESTS_DIR.parent
sys.path.insert(0, str(PROJECT_ROOT / "src"))

from dotgraft import (
    DotParseError,
    Fragment,
    FragmentError,
    MalformedOutput,
    NodeNotFound,
    RenderedNodeMissing,
    compose,
    embed_fragments,
    polygon_bounds,
    render_with_embeddings,
    to_svg_text,
)
from dotgraft.dotgraft import SVG_NS, XHTML_NS, parse_dot, parse_polygon_points

from fake_graphviz import fake_svg_from_dot


def _q(tag: str) -> str:
    return f"{{{SVG_NS}}}{tag}"


def _fragment(width: float, height: float, text: str = "code") -> Fragment:
    element = ET.Element(f"{{{XHTML_NS}}}div")
    element.text = text
    return Fragment(element, width, height)


def _node_group(root: ET.Element, node_id: str) -> ET.Element:
    matches = [el for el in root.iter() if el.get("id") == node_id]
    if len(matches) != 1:
        raise AssertionError(f"expected one element with id {node_id}, got {len(matches)}")
    return matches[0]


def _translate(value: str) -> tuple[float, float]:
    match = re.fullmatch(r"translate\((\S+) (\S+)\)", value)
    if not match:
        raise AssertionError(f"not a translate transform: {value}")
    return float(match.group(1)), float(match.group(2))


class EndToEndTests(unittest.TestCase):
    def test_single_node_scenario(self) -> None:
        fragment = _fragment(100, 50)
        root = render_with_embeddings(
            'digraph { a [id="n1"]; }', {"n1": fragment}, fake_svg_from_dot
        )
        group = _node_group(root, "n1")
        polygon = group.find(_q("polygon"))
        container = group.find(_q("foreignObject"))
        self.assertIsNotNone(polygon)
        self.assertIsNotNone(container)
        self.assertEqual(container.get("width"), "100px")
        self.assertEqual(container.get("height"), "50px")
        rect = polygon_bounds(parse_polygon_points(polygon.get("points")))
        x, y = _translate(container.get("transform"))
        self.assertAlmostEqual(x, rect.x, places=3)
        self.assertAlmostEqual(y, rect.y, places=3)
        self.assertIs(container[0], fragment.element)

    def test_every_identifier_embedded_exactly_once(self) -> None:
        dot = """
        digraph {
          a [id="first"]; b [id="second"]; c [id="third"]; d;
          a -> b -> c -> d;
        }
        """
        embeddings = {
            "first": _fragment(80, 20),
            "second": _fragment(144, 72),
            "third": _fragment(10.5, 33.25),
        }
        root = render_with_embeddings(dot, embeddings, fake_svg_from_dot)
        containers = list(root.iter(_q("foreignObject")))
        self.assertEqual(len(containers), 3)
        for node_id, fragment in embeddings.items():
            group = _node_group(root, node_id)
            placed = group.findall(_q("foreignObject"))
            self.assertEqual(len(placed), 1)
            self.assertIs(placed[0][0], fragment.element)

    def test_container_uses_fragment_size_not_polygon_size(self) -> None:
        svg = (
            f'<svg xmlns="{SVG_NS}"><g id="graph0">'
            '<g id="n1" class="node"><polygon points="0,-60 -10,-60 -10,0 0,0"/></g>'
            "</g></svg>"
        )
        root = compose(svg, {"n1": _fragment(12.5, 7)})
        container = next(root.iter(_q("foreignObject")))
        self.assertEqual(container.get("width"), "12.5px")
        self.assertEqual(container.get("height"), "7px")
        self.assertEqual(container.get("transform"), "translate(-10 -60)")

    def test_accepts_parsed_graph_and_mutates_it(self) -> None:
        graph = parse_dot('digraph { a [id="n1"]; }')
        render_with_embeddings(graph, {"n1": _fragment(72, 36)}, fake_svg_from_dot)
        self.assertEqual(graph.get("bgcolor"), "invis")

    def test_layout_receives_injected_dot(self) -> None:
        seen = []

        def layout(dot_text: str) -> str:
            seen.append(dot_text)
            return fake_svg_from_dot(dot_text)

        render_with_embeddings('digraph { a [id="n1"]; }', {"n1": _fragment(144, 72)}, layout)
        self.assertEqual(len(seen), 1)
        self.assertIn("fixedsize", seen[0])
        self.assertIn("invis", seen[0])

    def test_node_declared_twice_renders_once(self) -> None:
        fragment = _fragment(144, 72)
        root = render_with_embeddings(
            'digraph { a [id="n1"]; a [label="hello", shape=ellipse]; }',
            {"n1": fragment},
            fake_svg_from_dot,
        )
        group = _node_group(root, "n1")
        rect = polygon_bounds(parse_polygon_points(group.find(_q("polygon")).get("points")))
        self.assertAlmostEqual(rect.width, 144, places=1)
        self.assertIs(group.find(_q("foreignObject"))[0], fragment.element)

    def test_no_embeddings_returns_layout_unchanged(self) -> None:
        root = render_with_embeddings("digraph { a; }", {}, fake_svg_from_dot)
        self.assertEqual(list(root.iter(_q("foreignObject"))), [])

    def test_serializes_to_svg_text(self) -> None:
        root = render_with_embeddings(
            'digraph { a [id="n1"]; }', {"n1": _fragment(100, 50, "x = 1")}, fake_svg_from_dot
        )
        text = to_svg_text(root)
        reparsed = ET.fromstring(text)
        self.assertEqual(reparsed.tag, _q("svg"))
        self.assertIn("x = 1", text)
        self.assertIn('width="100px"', text)


class GraphvizOutputTests(unittest.TestCase):
    """Composition against SVG as written by ``dot -Tsvg``."""

    FIXTURE = TESTS_DIR / "fixtures" / "embedded.svg"

    def test_embeds_into_dot_output(self) -> None:
        fragment = _fragment(100, 50)
        root = compose(self.FIXTURE.read_text(), {"n1": fragment})
        group = _node_group(root, "n1")
        children = list(group)
        self.assertEqual([el.tag for el in children], [_q("title"), _q("polygon"), _q("foreignObject")])
        container = children[2]
        self.assertEqual(container.get("width"), "100px")
        self.assertEqual(container.get("height"), "50px")
        self.assertEqual(container.get("transform"), "translate(0 -122)")
        self.assertIs(container[0], fragment.element)

    def test_invisible_rect_polygon_matches_fragment_size(self) -> None:
        root = ET.fromstring(self.FIXTURE.read_text())
        polygon = _node_group(root, "n1").find(_q("polygon"))
        self.assertEqual(polygon.get("stroke"), "transparent")
        rect = polygon_bounds(parse_polygon_points(polygon.get("points")))
        self.assertEqual((rect.width, rect.height), (100, 50))

    def test_other_nodes_and_edges_untouched(self) -> None:
        root = compose(self.FIXTURE.read_text(), {"n1": _fragment(100, 50)})
        self.assertEqual(len(list(root.iter(_q("foreignObject")))), 1)
        self.assertIsNotNone(_node_group(root, "n2").find(_q("ellipse")))
        self.assertIsNotNone(_node_group(root, "edge1").find(_q("path")))

    def test_node_id_without_polygon_in_dot_output(self) -> None:
        with self.assertRaises(RenderedNodeMissing):
            compose(self.FIXTURE.read_text(), {"n2": _fragment(10, 10)})


class FailureTests(unittest.TestCase):
    def test_missing_node_fails_before_layout(self) -> None:
        calls = []

        def layout(dot_text: str) -> str:
            calls.append(dot_text)
            return fake_svg_from_dot(dot_text)

        with self.assertRaises(NodeNotFound):
            render_with_embeddings('digraph { a [id="n1"]; }', {"n2": _fragment(1, 1)}, layout)
        self.assertEqual(calls, [])

    def test_rendered_node_missing(self) -> None:
        def lossy_layout(dot_text: str) -> str:
            return fake_svg_from_dot(dot_text).replace('id="n1"', 'id="renamed"')

        with self.assertRaises(RenderedNodeMissing) as ctx:
            render_with_embeddings('digraph { a [id="n1"]; }', {"n1": _fragment(1, 1)}, lossy_layout)
        self.assertEqual(ctx.exception.node_id, "n1")

    def test_rendered_node_without_polygon(self) -> None:
        svg = f'<svg xmlns="{SVG_NS}"><g id="n1"><ellipse rx="3" ry="2"/></g></svg>'
        with self.assertRaises(RenderedNodeMissing):
            compose(svg, {"n1": _fragment(1, 1)})

    def test_second_missing_node_leaves_document_ungrafted(self) -> None:
        root = ET.fromstring(
            f'<svg xmlns="{SVG_NS}">'
            '<g id="n1"><polygon points="0,0 10,0 10,5 0,5"/></g>'
            '<g id="n2"><ellipse rx="3" ry="2"/></g>'
            "</svg>"
        )
        first = _fragment(10, 5)
        with self.assertRaises(RenderedNodeMissing) as ctx:
            embed_fragments(root, {"n1": first, "n2": _fragment(1, 1)})
        self.assertEqual(ctx.exception.node_id, "n2")
        self.assertEqual(list(root.iter(_q("foreignObject"))), [])
        self.assertFalse(any(el is first.element for el in root.iter()))

    def test_unparsable_output(self) -> None:
        with self.assertRaises(MalformedOutput):
            compose("Error: syntax error in line 1", {})

    def test_non_svg_root(self) -> None:
        with self.assertRaises(MalformedOutput):
            compose("<html/>", {})

    def test_polygon_without_vertices(self) -> None:
        svg = f'<svg xmlns="{SVG_NS}"><g id="n1"><polygon points=""/></g></svg>'
        with self.assertRaises(MalformedOutput):
            compose(svg, {"n1": _fragment(1, 1)})

    def test_bad_dot_text(self) -> None:
        with self.assertRaises(DotParseError):
            render_with_embeddings("digraph { a -> ", {}, fake_svg_from_dot)


class FragmentTests(unittest.TestCase):
    def test_from_svg_uses_width_and_height(self) -> None:
        fragment = Fragment.from_svg(
            f'<svg xmlns="{SVG_NS}" width="120px" height="40"><rect width="120" height="40"/></svg>'
        )
        self.assertEqual(fragment.measure(), (120.0, 40.0))
        self.assertEqual(fragment.element.tag, _q("svg"))

    def test_from_svg_falls_back_to_viewbox(self) -> None:
        fragment = Fragment.from_svg(f'<svg xmlns="{SVG_NS}" viewBox="0 0 30 15"/>')
        self.assertEqual(fragment.measure(), (30.0, 15.0))

    def test_from_svg_without_size(self) -> None:
        with self.assertRaises(FragmentError):
            Fragment.from_svg(f'<svg xmlns="{SVG_NS}"/>')

    def test_from_svg_rejects_other_roots(self) -> None:
        with self.assertRaises(FragmentError):
            Fragment.from_svg("<div/>")

    def test_negative_size_rejected(self) -> None:
        with self.assertRaises(FragmentError):
            _fragment(-1, 5)


if __name__ == "__main__":
    unittest.main()
