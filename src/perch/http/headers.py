"""Immutable, case-insensitive HTTP headers backed by ASGI byte pairs."""

from collections.abc import Iterable, Iterator, Mapping

# Connection-scoped headers that must not cross a proxy (RFC 9110 7.6.1).
HOP_BY_HOP = frozenset({
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "te",
    "trailer",
    "transfer-encoding",
    "upgrade",
})


class Headers(Mapping[str, str]):
    """Read-only header view. ``__getitem__`` returns the first value."""

    __slots__ = ("_raw",)

    def __init__(self, raw: Iterable[tuple[bytes, bytes]] = ()) -> None:
        self._raw = tuple(raw)

    def __getitem__(self, key: str) -> str:
        wanted = key.lower().encode("latin-1")
        for name, value in self._raw:
            if name.lower() == wanted:
                return value.decode("latin-1")
        raise KeyError(key)

    def __contains__(self, key: object) -> bool:
        if not isinstance(key, str):
            return False
        wanted = key.lower().encode("latin-1")
        return any(name.lower() == wanted for name, _ in self._raw)

    def __iter__(self) -> Iterator[str]:
        seen: set[str] = set()
        for name, _ in self._raw:
            key = name.decode("latin-1").lower()
            if key not in seen:
                seen.add(key)
                yield key

    def __len__(self) -> int:
        return len(set(self))

    def __repr__(self) -> str:
        return f"Headers({dict(self)!r})"

    def get_list(self, key: str) -> list[str]:
        """All values for *key*, in order."""
        wanted = key.lower().encode("latin-1")
        return [value.decode("latin-1") for name, value in self._raw if name.lower() == wanted]

    def without(self, names: Iterable[str]) -> "Headers":
        """A copy with the named headers removed (case-insensitive)."""
        drop = {name.lower().encode("latin-1") for name in names}
        return Headers(pair for pair in self._raw if pair[0].lower() not in drop)

    def items_list(self) -> list[tuple[str, str]]:
        """Every header pair decoded, duplicates preserved."""
        return [(n.decode("latin-1"), v.decode("latin-1")) for n, v in self._raw]


def proxy_headers(headers: Headers) -> Headers:
    """Strip hop-by-hop headers, including any named in ``Connection``."""
    named = {
        token.strip().lower()
        for value in headers.get_list("connection")
        for token in value.split(",")
        if token.strip()
    }
    return headers.without(HOP_BY_HOP | named)

