"""Public API for dotgraft."""
from .code import CodeOptions, render_code, render_code_segments
from .dotgraft import (
    DotGraftError,
    DotParseError,
    DuplicateNodeId,
    EmbeddingRenderer,
    EngineLoadFailure,
    Fragment,
    FragmentError,
    GraphvizLayout,
    LayoutFailure,
    MalformedOutput,
    NodeNotFound,
    PlacementRect,
    RenderedNodeMissing,
    compose,
    embed_fragments,
    index_nodes,
    inject_sizes,
    polygon_bounds,
    render_with_embeddings,
    to_svg_text,
)

__all__ = [
    "CodeOptions",
    "DotGraftError",
    "DotParseError",
    "DuplicateNodeId",
    "EmbeddingRenderer",
    "EngineLoadFailure",
    "Fragment",
    "FragmentError",
    "GraphvizLayout",
    "LayoutFailure",
    "MalformedOutput",
    "NodeNotFound",
    "PlacementRect",
    "RenderedNodeMissing",
    "compose",
    "embed_fragments",
    "index_nodes",
    "inject_sizes",
    "polygon_bounds",
    "render_code",
    "render_code_segments",
    "render_with_embeddings",
    "to_svg_text",
]
