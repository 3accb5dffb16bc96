import hashlib
from secrets import compare_digest
from typing import Any, Iterable, List, Mapping, Tuple

SIGNATURE_FIELD = "signature"
FILE_FIELD = "file"
UNSIGNED_FIELDS = frozenset({SIGNATURE_FIELD, FILE_FIELD})


def canonical_string(fields: Mapping[str, Any], secret: str) -> str:
    """Build the ``name=value&...&secret=<secret>`` text that gets hashed.

    Field names are sorted byte-wise so clients may send them in any order.
    The signature and file payload fields never take part; the secret is
    always the final pair.
    """

    names = sorted(
        (name for name in fields if name not in UNSIGNED_FIELDS),
        key=lambda name: name.encode("utf-8"),
    )
    parts: List[str] = [f"{name}={fields[name]}" for name in names]
    parts.append(f"secret={secret}")
    return "&".join(parts)


class Authenticator:
    """Compute and check shared-secret request signatures.

    The default digest is SHA-1 so that signers written against earlier
    deployments keep working; SHA-256 can be selected instead.
    """

    def __init__(self, secret: str, algorithm: str = "sha1") -> None:
        if not secret:
            raise ValueError("Authenticator requires a non-empty secret")
        hashlib.new(algorithm)  # unknown names raise ValueError here
        self._secret = secret
        self._algorithm = algorithm

    @property
    def algorithm(self) -> str:
        return self._algorithm

    def compute_signature(self, fields: Mapping[str, Any]) -> str:
        digest = hashlib.new(self._algorithm)
        digest.update(canonical_string(fields, self._secret).encode("utf-8"))
        return digest.hexdigest()

    def verify(self, fields: Mapping[str, Any], candidate: Any) -> bool:
        if not isinstance(candidate, str) or not candidate:
            return False
        expected = self.compute_signature(fields)
        try:
            return compare_digest(expected, candidate)
        except TypeError:
            # non-ASCII candidates cannot be compared as str
            return False

    def __repr__(self) -> str:
        return f"Authenticator(algorithm={self._algorithm!r})"


def parse_field_pairs(pairs: Iterable[str]) -> List[Tuple[str, str]]:
    """Split ``name=value`` strings as accepted by the ``sign`` command."""

    parsed: List[Tuple[str, str]] = []
    for pair in pairs:
        name, separator, value = pair.partition("=")
        if not separator or not name:
            raise ValueError(f"Expected name=value, got {pair!r}")
        parsed.append((name, value))
    return parsed
