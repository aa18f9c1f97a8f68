"""
Moving images between machines.

Two channels are supported: a tar archive carried by hand (with a sha256
sidecar so the receiving side can check it arrived intact), and a registry.
"""

import hashlib
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Union

from .common.errors import ChecksumMismatchError
from .common.logger import get_logger
from .engine.docker_client import ContainerEngine, ImageInfo, split_reference

logger = get_logger(__name__)

CHUNK_SIZE = 1024 * 1024


@dataclass
class ArchiveManifest:
    """Where an exported archive is and what it should hash to."""
    path: Path
    sha256: str
    size: int
    image_id: str


def file_sha256(path: Union[str, Path]) -> str:
    digest = hashlib.sha256()
    with open(path, 'rb') as f:
        for chunk in iter(lambda: f.read(CHUNK_SIZE), b''):
            digest.update(chunk)
    return digest.hexdigest()


def checksum_path(archive: Union[str, Path]) -> Path:
    archive = Path(archive)
    return archive.with_name(archive.name + '.sha256')


def read_checksum(archive: Union[str, Path]) -> Optional[str]:
    """Digest recorded in the sidecar file, or None when there is none."""
    sidecar = checksum_path(archive)
    if not sidecar.exists():
        return None
    content = sidecar.read_text(encoding='utf-8').strip()
    return content.split()[0] if content else None


def export_image(engine: ContainerEngine, image: str, output_path: Union[str, Path]) -> ArchiveManifest:
    """
    Save an image to an archive and record its digest next to it.

    The sidecar uses the `sha256sum` format, so `sha256sum -c` works too.
    """
    info = engine.inspect(image)
    archive = engine.save(image, output_path)
    digest = file_sha256(archive)

    checksum_path(archive).write_text(f"{digest}  {archive.name}\n", encoding='utf-8')

    manifest = ArchiveManifest(
        path=archive,
        sha256=digest,
        size=archive.stat().st_size,
        image_id=info.id,
    )
    logger.info(f"Exported {image} to {archive} ({manifest.size} bytes, sha256 {digest[:12]})")
    return manifest


def import_image(engine: ContainerEngine, input_path: Union[str, Path],
                 verify_checksum: bool = True) -> List[ImageInfo]:
    """
    Load an archive, checking it against its sidecar digest first.

    Raises:
        ChecksumMismatchError: The archive does not match its recorded digest
    """
    archive = Path(input_path)

    if verify_checksum:
        expected = read_checksum(archive)
        if expected is None:
            logger.warning(f"No checksum recorded for {archive}; loading unverified")
        else:
            actual = file_sha256(archive)
            if actual != expected:
                raise ChecksumMismatchError(
                    f"{archive} has sha256 {actual}, expected {expected}"
                )
            logger.info(f"Checksum of {archive} verified")

    return engine.load(archive)


def publish(engine: ContainerEngine, image: str, repository: str, tag: Optional[str] = None,
            auth_config: Optional[Dict[str, str]] = None) -> str:
    """
    Tag an image under a registry repository and push it.

    Returns:
        The pushed reference
    """
    if tag is None:
        _, tag = split_reference(image)

    reference = engine.tag(image, f"{repository}:{tag}")
    engine.push(reference, auth_config=auth_config)
    return reference


def fetch(engine: ContainerEngine, name: str) -> ImageInfo:
    """Pull an image from its registry."""
    return engine.pull(name)
