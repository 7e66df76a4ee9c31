"""
PyYAML loading shared by the platform normalizers.
"""

from typing import Any

import yaml

LINE_KEY = "__line__"


class _LineLoader(yaml.SafeLoader):
    """PyYAML loader that stores the start line number on every mapping node."""


def _construct_mapping(loader: _LineLoader, node: yaml.MappingNode) -> dict[Any, Any]:
    mapping: dict[Any, Any] = loader.construct_mapping(node, deep=True)
    mapping[LINE_KEY] = node.start_mark.line + 1  # YAML lines are 0-indexed
    return mapping


_LineLoader.add_constructor(
    yaml.resolver.BaseResolver.DEFAULT_MAPPING_TAG,
    _construct_mapping,
)


def load_yaml_documents(content: bytes) -> list[Any]:
    """Load every YAML document in a stream.

    Raises:
        yaml.YAMLError: If the content isn't valid YAML.
    """
    return list(yaml.load_all(content, Loader=_LineLoader))  # noqa: S506  # _LineLoader is safe


def clean(mapping: Any) -> dict[Any, Any]:
    """Shallow copy of a loaded mapping without the line marker."""
    if not isinstance(mapping, dict):
        return {}
    return {k: v for k, v in mapping.items() if k != LINE_KEY}


def line_of(mapping: Any) -> Any:
    if isinstance(mapping, dict):
        return mapping.get(LINE_KEY)
    return None
