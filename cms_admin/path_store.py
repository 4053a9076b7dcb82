"""
Path-addressable store used for validation errors.

A path is a sequence of segments, each either a field name (str) or a
list index (int). Paths can be given as tuples or as dotted strings:

    'quote_section.quotes.2.title'  ==  ('quote_section', 'quotes', 2, 'title')

The store is kept minimal: deleting a leaf prunes every container that
becomes empty, so "is anything wrong under this prefix" is a direct lookup.
"""

import copy
from typing import Any, Dict, Iterator, List, Tuple, Union

PathSegment = Union[str, int]
Path = Tuple[PathSegment, ...]
PathLike = Union[str, Path, List[PathSegment]]


class ShapeError(ValueError):
    """A path does not match the shape of the data it addresses.

    This is a programming error (wrong path built by the caller), never a
    user-facing validation problem.
    """


def parse_path(path: PathLike) -> Path:
    """
    Normalise a path into a tuple of segments.

    Args:
        path: Dotted string, tuple or list of segments

    Returns:
        Tuple of segments; digit-only string segments become ints
    """
    if isinstance(path, str):
        raw = path.split('.') if path else []
    elif isinstance(path, (tuple, list)):
        raw = list(path)
    else:
        raise ShapeError(f'Unsupported path type: {type(path).__name__}')

    segments = []
    for segment in raw:
        if isinstance(segment, bool):
            raise ShapeError(f'Invalid path segment: {segment!r}')
        if isinstance(segment, int):
            if segment < 0:
                raise ShapeError(f'Negative index in path: {segment}')
            segments.append(segment)
        elif isinstance(segment, str):
            if segment == '':
                raise ShapeError(f'Empty segment in path {path!r}')
            segments.append(int(segment) if segment.isdigit() else segment)
        else:
            raise ShapeError(f'Invalid path segment: {segment!r}')
    return tuple(segments)


def format_path(path: PathLike) -> str:
    """Render a path in its dotted form."""
    return '.'.join(str(segment) for segment in parse_path(path))


class PathStore:
    """Nested mapping addressed by paths."""

    def __init__(self):
        self._root: Dict[PathSegment, Any] = {}

    def set(self, path: PathLike, value: Any) -> None:
        """
        Store a value at a path, creating intermediate containers.

        Raises:
            ShapeError: if an intermediate segment holds a leaf value, or the
                target currently holds a container
        """
        segments = parse_path(path)
        if not segments:
            raise ShapeError('Cannot set a value at the root path')

        node = self._root
        for depth, segment in enumerate(segments[:-1]):
            child = node.get(segment)
            if child is None:
                child = {}
                node[segment] = child
            elif not isinstance(child, dict):
                prefix = format_path(segments[:depth + 1])
                raise ShapeError(f'Cannot descend through leaf value at {prefix!r}')
            node = child

        leaf = segments[-1]
        if isinstance(node.get(leaf), dict):
            raise ShapeError(f'Cannot overwrite container at {format_path(segments)!r}')
        node[leaf] = value

    def get(self, path: PathLike) -> Any:
        """
        Return the value at a path.

        Returns:
            The leaf value, a nested copy when the path names a container,
            or None when nothing is stored there
        """
        node = self._find(parse_path(path))
        if isinstance(node, dict):
            return copy.deepcopy(node)
        return node

    def delete(self, path: PathLike) -> None:
        """Remove a leaf or a whole subtree and prune empty ancestors."""
        segments = parse_path(path)
        if not segments:
            self._root.clear()
            return

        trail = [self._root]
        node = self._root
        for segment in segments[:-1]:
            node = node.get(segment)
            if not isinstance(node, dict):
                return
            trail.append(node)

        if segments[-1] not in node:
            return
        del node[segments[-1]]
        self._prune(segments, trail)

    def has_prefix(self, prefix: PathLike = ()) -> bool:
        """True if any entry exists at or below the prefix."""
        segments = parse_path(prefix)
        if not segments:
            return bool(self._root)
        node = self._find(segments)
        if isinstance(node, dict):
            return bool(node)
        return node is not None

    def remove_index(self, prefix: PathLike, index: int) -> None:
        """
        Drop the entry at `index` under an index-keyed container and shift
        every higher index down by one.

        Used when an element is removed from a list whose positions are also
        used as path segments (sub-sections, points).
        """
        segments = parse_path(prefix)
        container = self._find(segments) if segments else self._root
        if container is None:
            return
        if not isinstance(container, dict):
            raise ShapeError(f'Expected a container at {format_path(segments)!r}')

        container.pop(index, None)
        shifted = sorted(key for key in container if isinstance(key, int) and key > index)
        for key in shifted:
            container[key - 1] = container.pop(key)

        if not container and segments:
            self.delete(segments)

    def items(self) -> Iterator[Tuple[Path, Any]]:
        """Yield (path, value) for every leaf, in insertion order."""
        yield from self._walk(self._root, ())

    def paths(self) -> List[Path]:
        return [path for path, _ in self.items()]

    def flatten(self) -> Dict[str, Any]:
        """Dotted path -> value mapping of every leaf."""
        return {format_path(path): value for path, value in self.items()}

    def to_dict(self) -> Dict[str, Any]:
        """Nested copy with string keys, suitable for JSON."""
        def convert(node):
            if isinstance(node, dict):
                return {str(key): convert(value) for key, value in node.items()}
            return node
        return convert(self._root)

    def clear(self) -> None:
        self._root.clear()

    def __len__(self) -> int:
        return sum(1 for _ in self.items())

    def __bool__(self) -> bool:
        return bool(self._root)

    def __contains__(self, path) -> bool:
        try:
            node = self._find(parse_path(path))
        except ShapeError:
            return False
        return node is not None and not isinstance(node, dict)

    def __repr__(self):
        return f'<PathStore {self.flatten()!r}>'

    def _find(self, segments: Path) -> Any:
        node: Any = self._root
        for segment in segments:
            if not isinstance(node, dict):
                return None
            node = node.get(segment)
            if node is None:
                return None
        return node

    def _prune(self, segments: Path, trail: List[Dict]) -> None:
        # trail[i] is the container holding segments[i]
        for depth in range(len(segments) - 1, 0, -1):
            if trail[depth]:
                break
            del trail[depth - 1][segments[depth - 1]]

    def _walk(self, node: Dict, prefix: Path) -> Iterator[Tuple[Path, Any]]:
        for key, value in node.items():
            path = prefix + (key,)
            if isinstance(value, dict):
                yield from self._walk(value, path)
            else:
                yield path, value
