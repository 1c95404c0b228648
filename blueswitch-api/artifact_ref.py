import re
from dataclasses import dataclass
from typing import Iterable, Optional


_URI_PATTERN = re.compile(r"^(?P<scheme>[a-z][a-z0-9+.-]*)://(?P<location>\S+)$", re.IGNORECASE)


class InvalidArtifactRef(ValueError):
    pass


@dataclass(frozen=True)
class ArtifactRef:
    """Opaque pointer to a built static bundle, e.g. ``s3://bucket/site/123.tar.gz``."""

    scheme: str
    location: str

    @property
    def uri(self) -> str:
        return f"{self.scheme}://{self.location}"


def parse_artifact_ref(value: Optional[str]) -> ArtifactRef:
    if not isinstance(value, str) or not value.strip():
        raise InvalidArtifactRef("artifactRef must be a non-empty string")
    match = _URI_PATTERN.match(value.strip())
    if not match:
        raise InvalidArtifactRef(f"artifactRef is not a URI: {value.strip()[:80]}")
    return ArtifactRef(scheme=match.group("scheme").lower(), location=match.group("location"))


def validate_artifact_ref_scheme(value: Optional[str], allowed_schemes: Iterable[str]) -> ArtifactRef:
    ref = parse_artifact_ref(value)
    allowed = sorted({s.strip().lower() for s in allowed_schemes if isinstance(s, str) and s.strip()})
    if ref.scheme not in allowed:
        raise InvalidArtifactRef(
            f"artifactRef scheme {ref.scheme} is not allowed (allowed: {', '.join(allowed) or 'none'})"
        )
    return ref
