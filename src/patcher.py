"""Manifest patching.

Rewrites exactly one container image field inside a YAML manifest.

The field is addressed structurally: the document is composed into a
node tree with PyYAML, the container is located by name under any
`containers` or `initContainers` list, and the new value is spliced
into the raw text at the scalar's source span. Everything outside that
span (comments, key order, quoting of other fields, line endings) is
left untouched.

Selector grammar:
    api                     container named 'api' anywhere in the file
    Deployment/web/api      container 'api' inside the Deployment named 'web'
"""

import logging
from dataclasses import dataclass
from typing import Iterator, Optional

import yaml
from yaml.nodes import MappingNode, Node, ScalarNode, SequenceNode

from errors import ConfigurationError, ManifestParseError, SelectorAmbiguous, SelectorNotFound
from image_ref import ImageReference

logger = logging.getLogger(__name__)

CONTAINER_LIST_KEYS = ('containers', 'initContainers')
IMAGE_KEY = 'image'


@dataclass(frozen=True)
class ContainerSelector:
    """Parsed container selector.

    Attributes:
        container: Container name to match
        kind: Owning object kind (None matches any)
        name: Owning object metadata.name (None matches any)
    """
    container: str
    kind: Optional[str] = None
    name: Optional[str] = None

    @classmethod
    def parse(cls, value: str) -> 'ContainerSelector':
        """Parse `container` or `Kind/name/container`.

        Raises:
            ConfigurationError: If the selector is empty or malformed
        """
        parts = [p.strip() for p in (value or '').strip().split('/')]
        if len(parts) == 1 and parts[0]:
            return cls(container=parts[0])
        if len(parts) == 3 and all(parts):
            return cls(container=parts[2], kind=parts[0], name=parts[1])
        raise ConfigurationError(
            f"Invalid container selector {value!r} "
            "(expected <container> or <Kind>/<name>/<container>)"
        )

    def __str__(self) -> str:
        if self.kind:
            return f"{self.kind}/{self.name}/{self.container}"
        return self.container


@dataclass
class ManifestDocument:
    """A manifest file as read from the working copy."""
    file_path: str
    raw_content: str
    container_selector: str


@dataclass
class PatchResult:
    """Outcome of patching one manifest.

    changed=False guarantees new_content is raw_content unchanged.
    """
    changed: bool
    new_content: str
    file_path: str = ''
    previous_image: str = ''
    target_image: str = ''


@dataclass
class _Owner:
    kind: Optional[str] = None
    name: Optional[str] = None


def _scalar(node: Optional[Node]) -> Optional[str]:
    if isinstance(node, ScalarNode):
        return node.value
    return None


def _get(mapping: MappingNode, key: str) -> Optional[Node]:
    """Return the value node for a scalar key (last one wins, as in YAML loaders)."""
    return _get_item(mapping, key)[1]


def _get_item(mapping: MappingNode, key: str) -> tuple[Optional[Node], Optional[Node]]:
    """Return the (key node, value node) pair for a scalar key."""
    found: tuple[Optional[Node], Optional[Node]] = (None, None)
    for key_node, value_node in mapping.value:
        if _scalar(key_node) == key:
            found = (key_node, value_node)
    return found


def _owner_of(mapping: MappingNode) -> Optional[_Owner]:
    """Identify a Kubernetes-style object mapping (has 'kind')."""
    kind = _scalar(_get(mapping, 'kind'))
    if kind is None:
        return None
    metadata = _get(mapping, 'metadata')
    name = _scalar(_get(metadata, 'name')) if isinstance(metadata, MappingNode) else None
    return _Owner(kind=kind, name=name)


def _iter_containers(node: Node, owner: _Owner, seen: set) -> Iterator[tuple[_Owner, MappingNode]]:
    """Yield (owner, container mapping) for every container in the tree."""
    if id(node) in seen:
        return
    seen.add(id(node))

    if isinstance(node, MappingNode):
        owner = _owner_of(node) or owner
        for key_node, value_node in node.value:
            if _scalar(key_node) in CONTAINER_LIST_KEYS and isinstance(value_node, SequenceNode):
                for item in value_node.value:
                    if isinstance(item, MappingNode) and id(item) not in seen:
                        seen.add(id(item))
                        yield owner, item
                continue
            yield from _iter_containers(value_node, owner, seen)
    elif isinstance(node, SequenceNode):
        for item in node.value:
            yield from _iter_containers(item, owner, seen)


def find_image_nodes(content: str, selector: ContainerSelector, file_path: str = '') -> list[tuple[Optional[Node], Optional[Node]]]:
    """Locate every container matching the selector.

    Returns:
        List of (image key node, image value node), both None when the
        container has no image field

    Raises:
        ManifestParseError: If the content is not valid YAML
    """
    try:
        documents = list(yaml.compose_all(content, Loader=yaml.SafeLoader))
    except yaml.YAMLError as e:
        raise ManifestParseError(file_path, str(e).replace('\n', ' ')) from e

    matches = []
    seen: set = set()
    for document in documents:
        if document is None:
            continue
        for owner, container in _iter_containers(document, _Owner(), seen):
            if _scalar(_get(container, 'name')) != selector.container:
                continue
            if selector.kind and (owner.kind != selector.kind or owner.name != selector.name):
                continue
            matches.append(_get_item(container, IMAGE_KEY))
    return matches


def _is_plain_safe(value: str) -> bool:
    """True if value round-trips as a plain YAML string."""
    if not value or value != value.strip() or '\n' in value:
        return False
    if ': ' in value or ' #' in value or value[0] in '!&*-?{}[],#|>@`"\'%':
        return False
    try:
        return yaml.safe_load(value) == value
    except yaml.YAMLError:
        return False


def render_scalar(value: str, style: Optional[str]) -> str:
    """Render value in the given scalar style (None = plain)."""
    if style == "'":
        return "'" + value.replace("'", "''") + "'"
    if style is None and _is_plain_safe(value):
        return value
    escaped = value.replace('\\', '\\\\').replace('"', '\\"')
    return f'"{escaped}"'


def _value_start(content: str, node: ScalarNode, file_path: str) -> int:
    """Source offset of a scalar's value, after any &anchor or !tag properties."""
    start = node.start_mark.index
    if content[start] not in '&!':
        return start
    try:
        for token in yaml.scan(content[start:node.end_mark.index], Loader=yaml.SafeLoader):
            if isinstance(token, yaml.ScalarToken):
                return start + token.start_mark.index
    except yaml.YAMLError as e:
        raise ManifestParseError(file_path, f"cannot locate image value: {e}") from e
    raise ManifestParseError(file_path, "cannot locate image value after its anchor or tag")


def _check_patched(content: str, selector: ContainerSelector, target_image: str, file_path: str) -> None:
    """Re-read patched content and confirm the selected image is the target.

    Raises:
        ManifestParseError: Patched content no longer parses or lost the change
    """
    matches = find_image_nodes(content, selector, file_path)
    if len(matches) != 1 or _scalar(matches[0][1]) != target_image:
        raise ManifestParseError(file_path, f"patched content does not set {selector} to {target_image}")


def patch_manifest(document: ManifestDocument, target: ImageReference) -> PatchResult:
    """Point the selected container at the target image.

    Pure function: the same inputs always give the same result, and it is
    safe to run again on re-fetched content.

    Args:
        document: Manifest file contents and selector
        target: Image reference to deploy

    Returns:
        PatchResult (changed=False when the image already matches)

    Raises:
        ConfigurationError: Selector string is malformed
        ManifestParseError: Content is not valid YAML
        SelectorNotFound: No matching container, or its image is not patchable
        SelectorAmbiguous: More than one matching container
    """
    selector = ContainerSelector.parse(document.container_selector)
    target_image = str(target)
    matches = find_image_nodes(document.raw_content, selector, document.file_path)

    if not matches:
        raise SelectorNotFound(str(selector), document.file_path)
    if len(matches) > 1:
        raise SelectorAmbiguous(str(selector), document.file_path, len(matches))

    key_node, image_node = matches[0]
    if image_node is None:
        raise SelectorNotFound(str(selector), document.file_path, "container has no image field")
    if image_node.start_mark.index < key_node.end_mark.index:
        # Aliases resolve to the anchored node, which lives earlier in the file
        raise SelectorNotFound(str(selector), document.file_path, "image field is an alias")
    if not isinstance(image_node, ScalarNode):
        raise SelectorNotFound(str(selector), document.file_path, "image field is not a scalar")
    if image_node.style in ('|', '>'):
        raise SelectorNotFound(str(selector), document.file_path, "image field is a block scalar")

    previous_image = image_node.value
    if previous_image == target_image:
        logger.info(f"{document.file_path}: {selector} already at {target_image}")
        return PatchResult(
            changed=False,
            new_content=document.raw_content,
            file_path=document.file_path,
            previous_image=previous_image,
            target_image=target_image,
        )

    start = _value_start(document.raw_content, image_node, document.file_path)
    end = image_node.end_mark.index
    if start == end:
        raise SelectorNotFound(str(selector), document.file_path, "image field is empty")

    replacement = render_scalar(target_image, image_node.style)
    new_content = document.raw_content[:start] + replacement + document.raw_content[end:]
    _check_patched(new_content, selector, target_image, document.file_path)
    logger.info(f"{document.file_path}: {selector} image {previous_image} -> {target_image}")

    return PatchResult(
        changed=True,
        new_content=new_content,
        file_path=document.file_path,
        previous_image=previous_image,
        target_image=target_image,
    )
