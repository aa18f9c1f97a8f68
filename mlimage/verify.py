"""
Image verification.

A built image is checked by importing the numerics library inside a
container and printing its version and whether it can see a GPU. Two images
can also be compared for reproducibility: equal effective environment and
equal conda package sets.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Set, Tuple

from .common.config import Config
from .common.errors import ContainerRunError, VerificationError
from .common.logger import get_logger
from .engine.docker_client import ContainerEngine
from .metrics import metrics
from .recipe.templates import verification_command

logger = get_logger(__name__)

_BOOLEANS = {'true': True, 'false': False}


@dataclass
class VerificationResult:
    """Outcome of the in-container library check."""
    library: str
    version: str
    gpu_available: bool

    def __str__(self) -> str:
        gpu = 'GPU available' if self.gpu_available else 'no GPU'
        return f"{self.library} {self.version} ({gpu})"


@dataclass
class ImageComparison:
    """Differences between two images."""
    env_diff: Dict[str, Tuple[str, str]] = field(default_factory=dict)
    only_in_first: List[str] = field(default_factory=list)
    only_in_second: List[str] = field(default_factory=list)

    @property
    def identical(self) -> bool:
        return not (self.env_diff or self.only_in_first or self.only_in_second)


def parse_verification_output(text: str, library: str = '') -> VerificationResult:
    """
    Parse the two lines printed by the verification snippet.

    Anything printed earlier (warnings, banners) is ignored; the version and
    the GPU flag are the last two non-empty lines.

    Raises:
        VerificationError: Missing version or a flag that is not a boolean
    """
    lines = [line.strip() for line in text.splitlines() if line.strip()]
    if len(lines) < 2:
        raise VerificationError(f"Expected a version and a GPU flag, got: {text.strip()!r}")

    version, flag = lines[-2], lines[-1]
    gpu_available = _BOOLEANS.get(flag.lower())
    if gpu_available is None:
        raise VerificationError(f"GPU flag must be True or False, got {flag!r}")

    return VerificationResult(library=library, version=version, gpu_available=gpu_available)


def verify_image(engine: ContainerEngine, image: str, config: Config, gpus: bool = True) -> VerificationResult:
    """
    Import the configured library inside `image` and report what it sees.

    Raises:
        VerificationError: The import failed or the output was unusable
    """
    command = verification_command(config)
    logger.info(f"Verifying {config.numerics_library} in {image}")

    try:
        output = engine.run(image, command=command, gpus=gpus)
    except ContainerRunError as e:
        raise VerificationError(
            f"{config.numerics_library} check failed in {image}: {e.output.strip() or e}"
        ) from e

    result = parse_verification_output(output, config.numerics_library)
    metrics.record_verification(result.library, result.gpu_available)

    if gpus and not result.gpu_available:
        logger.warning(f"{result.library} in {image} cannot see a GPU")
    logger.info(f"Verified {image}: {result}")
    return result


def package_set(engine: ContainerEngine, image: str, env_name: str) -> Set[str]:
    """
    Packages installed in a conda environment, as name=version=build entries.
    """
    output = engine.run(image, command=['conda', 'list', '-n', env_name, '--export'])
    return {
        line.strip() for line in output.splitlines()
        if line.strip() and not line.startswith('#')
    }


def compare_images(engine: ContainerEngine, first: str, second: str, env_name: str) -> ImageComparison:
    """
    Compare effective environment and package sets of two images.
    """
    env_a = engine.inspect(first).env
    env_b = engine.inspect(second).env

    env_diff = {
        key: (env_a.get(key, ''), env_b.get(key, ''))
        for key in sorted(set(env_a) | set(env_b))
        if env_a.get(key) != env_b.get(key)
    }

    packages_a = package_set(engine, first, env_name)
    packages_b = package_set(engine, second, env_name)

    comparison = ImageComparison(
        env_diff=env_diff,
        only_in_first=sorted(packages_a - packages_b),
        only_in_second=sorted(packages_b - packages_a),
    )

    if comparison.identical:
        logger.info(f"{first} and {second} have identical environments and packages")
    else:
        logger.warning(
            f"{first} and {second} differ: {len(env_diff)} env vars, "
            f"{len(comparison.only_in_first) + len(comparison.only_in_second)} packages"
        )
    return comparison
