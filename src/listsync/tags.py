"""Tag definition and matching."""

from collections.abc import Callable, Iterable

from listsync.types import Tag


def define_tags(
    definitions: dict[str, Callable[..., tuple[str, ...]]],
) -> dict[str, Callable[..., Tag]]:
    """
    Define all tags in a centralized location.

    Example:
        tags = define_tags({
            "patients": lambda: ("Patient",),
            "observations": lambda patient_id: ("Observation", "patient", patient_id),
        })

        tags["patients"]()            # Tag: ("Patient",)
        tags["observations"]("p1")    # Tag: ("Observation", "patient", "p1")
    """
    result: dict[str, Callable[..., Tag]] = {}
    for name, fn in definitions.items():

        def make_tag(*args: str, _fn: Callable[..., tuple[str, ...]] = fn) -> Tag:
            return Tag(tuple(str(p) for p in _fn(*args)))

        result[name] = make_tag
    return result


def format_tag(tag: Tag) -> str:
    """Readable form for logs."""
    return "/".join(str(p) for p in tag)


def is_tag_prefix(parent: Tag, child: Tag) -> bool:
    """Check if parent is a prefix of child (for invalidation)."""
    if len(parent) > len(child):
        return False
    return child[: len(parent)] == parent


def matches_any(tag: Tag, targets: Iterable[Tag]) -> bool:
    """True if any target tag equals or prefixes ``tag``."""
    return any(is_tag_prefix(target, tag) for target in targets)
