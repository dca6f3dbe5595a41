"""
CSP directive vocabulary and ordered-set directive collections.
"""

from typing import Dict, Iterable, Iterator, List, Mapping, Optional, Tuple, Union

from shared.errors import ConfigurationError

FETCH_DIRECTIVES = (
    "default-src",
    "script-src",
    "style-src",
    "img-src",
    "connect-src",
    "font-src",
    "media-src",
    "object-src",
    "frame-src",
    "child-src",
    "worker-src",
    "manifest-src",
    "base-uri",
    "form-action",
    "frame-ancestors",
)
BOOLEAN_DIRECTIVES = ("upgrade-insecure-requests", "block-all-mixed-content")
TRUST_DIRECTIVES = ("require-trusted-types-for", "trusted-types")

DIRECTIVE_NAMES = FETCH_DIRECTIVES + BOOLEAN_DIRECTIVES + TRUST_DIRECTIVES
REPORTING_DIRECTIVES = ("report-uri", "report-to")
REQUIRED_DIRECTIVES = ("default-src", "script-src", "style-src", "img-src")

NONE = "'none'"

DirectiveMapping = Mapping[str, Iterable[str]]


def is_boolean(name: str) -> bool:
    return name in BOOLEAN_DIRECTIVES


class DirectiveSet:
    """Mapping of directive names to ordered, de-duplicated source lists.

    Merging is set union. A list holding only 'none' loses it as soon as a
    real source joins, and 'none' is never appended to a non-empty list.
    """

    def __init__(self, directives: Optional[Union[DirectiveMapping, "DirectiveSet"]] = None):
        self._directives: Dict[str, List[str]] = {}
        if directives is not None:
            self.merge(directives)

    def add(self, name: str, sources: Iterable[str] = ()) -> "DirectiveSet":
        if name not in DIRECTIVE_NAMES:
            raise ConfigurationError(f"Unknown CSP directive: {name}", {"directive": name})

        sources = list(sources)
        if is_boolean(name):
            self._directives.setdefault(name, [])
            return self

        if not sources and name not in self._directives:
            raise ConfigurationError(f"Directive {name} needs at least one source", {"directive": name})

        values = self._directives.setdefault(name, [])
        for source in sources:
            if source == NONE:
                if not values:
                    values.append(NONE)
                continue
            if values == [NONE]:
                values.clear()
            if source not in values:
                values.append(source)
        return self

    def merge(self, other: Union[DirectiveMapping, "DirectiveSet"]) -> "DirectiveSet":
        for name, sources in other.items():
            self.add(name, sources)
        return self

    def replace(self, name: str, sources: Iterable[str]) -> "DirectiveSet":
        """Swap a directive's sources wholesale, keeping the ordering rules."""
        self._directives.pop(name, None)
        return self.add(name, sources)

    def get(self, name: str) -> List[str]:
        return list(self._directives.get(name, []))

    def names(self) -> List[str]:
        return [name for name in DIRECTIVE_NAMES if name in self._directives]

    def items(self) -> Iterator[Tuple[str, List[str]]]:
        for name in self.names():
            yield name, list(self._directives[name])

    def copy(self) -> "DirectiveSet":
        return DirectiveSet(self)

    def to_dict(self) -> Dict[str, List[str]]:
        return dict(self.items())

    def __contains__(self, name: object) -> bool:
        return name in self._directives

    def __len__(self) -> int:
        return len(self._directives)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, DirectiveSet):
            return NotImplemented
        return self.to_dict() == other.to_dict()

    def __repr__(self) -> str:
        return f"DirectiveSet({self.to_dict()!r})"
