"""Docker engine client for building, running and distributing images."""

import re
import shutil
import subprocess
import tempfile
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Union

import docker
from docker.errors import APIError, ContainerError, DockerException, ImageNotFound
from docker.types import DeviceRequest
from docker.utils import parse_repository_tag

from ..common.errors import (
    BuildFailedError,
    ContainerRunError,
    EngineError,
    ImageNotFoundError,
    RegistryError,
)
from ..common.logger import ImageLoggerAdapter, get_logger
from ..metrics import ImageMetrics, metrics as default_metrics
from ..recipe.recipe import Recipe

logger = get_logger(__name__)

STEP_LINE = re.compile(r'^Step (\d+)/(\d+) : (.*)$')


def split_reference(name: str) -> tuple:
    """Split 'repo[:tag]' into (repo, tag), defaulting the tag to 'latest'."""
    repository, tag = parse_repository_tag(name)
    return repository, tag or 'latest'


def normalize_reference(name: str) -> str:
    if '@' in name:
        return name
    repository, tag = split_reference(name)
    return f"{repository}:{tag}"


def parse_volume_specs(specs: Optional[Sequence[str]]) -> Dict[str, Dict[str, str]]:
    """
    Convert 'host:container[:mode]' specs into the SDK's volume mapping.

    Raises:
        ValueError: Malformed spec or mode
    """
    volumes: Dict[str, Dict[str, str]] = {}
    for spec in specs or []:
        parts = spec.split(':')
        if len(parts) not in (2, 3) or not all(parts[:2]):
            raise ValueError(f"Volume must be host:container[:mode], got '{spec}'")
        mode = parts[2] if len(parts) == 3 else 'rw'
        if mode not in ('rw', 'ro'):
            raise ValueError(f"Volume mode must be rw or ro, got '{mode}'")
        host = str(Path(parts[0]).expanduser().resolve())
        volumes[host] = {'bind': parts[1], 'mode': mode}
    return volumes


@dataclass
class ImageInfo:
    """The parts of an image's configuration that matter for comparison."""
    id: str
    tags: List[str] = field(default_factory=list)
    env: Dict[str, str] = field(default_factory=dict)
    cmd: Optional[List[str]] = None
    workdir: str = ''
    layers: List[str] = field(default_factory=list)

    @classmethod
    def from_image(cls, image: Any) -> 'ImageInfo':
        attrs = image.attrs or {}
        config = attrs.get('Config') or {}

        env = {}
        for entry in config.get('Env') or []:
            key, _, value = entry.partition('=')
            env[key] = value

        return cls(
            id=image.id,
            tags=list(image.tags or []),
            env=env,
            cmd=config.get('Cmd'),
            workdir=config.get('WorkingDir') or '',
            layers=list((attrs.get('RootFS') or {}).get('Layers') or []),
        )


class ContainerEngine:
    """Client for Docker engine operations."""

    def __init__(self, client: Optional[docker.DockerClient] = None,
                 metrics: Optional[ImageMetrics] = None):
        """
        Initialize the engine client.

        Args:
            client: Preconfigured Docker client (default: from environment)
            metrics: Metrics sink (default: global metrics)
        """
        if client is None:
            try:
                client = docker.from_env()
                logger.info("Connected to Docker engine from environment")
            except DockerException as e:
                logger.error("Could not connect to the Docker engine")
                raise EngineError(f"Could not connect to the Docker engine: {e}") from e

        self.client = client
        self.metrics = metrics or default_metrics

    def _get_image(self, name: str):
        try:
            return self.client.images.get(name)
        except ImageNotFound as e:
            raise ImageNotFoundError(f"Image {name} not found") from e
        except APIError as e:
            raise EngineError(f"Failed to look up image {name}: {e}") from e

    def inspect(self, image: str) -> ImageInfo:
        """Describe a local image."""
        return ImageInfo.from_image(self._get_image(image))

    def build(
        self,
        recipe: Recipe,
        tag: str,
        context_path: Union[str, Path] = '.',
        nocache: bool = False
    ) -> ImageInfo:
        """
        Build an image from a recipe.

        The recipe is rendered to a temporary file inside the context, which
        is removed again once the builder is done. Files already in the
        context, including any Dockerfile, are left untouched. A failing
        step aborts the build and no image is tagged.

        Args:
            recipe: Recipe to build
            tag: Target image name
            context_path: Build context directory
            nocache: Ignore cached layers

        Returns:
            Description of the built image

        Raises:
            BuildFailedError: A step failed; `step` is the 1-based step number
        """
        recipe.validate()
        log = ImageLoggerAdapter(logger, {'image': tag, 'operation': 'build'})

        context = Path(context_path)
        context.mkdir(parents=True, exist_ok=True)
        with tempfile.NamedTemporaryFile(
            'w', encoding='utf-8', dir=context, prefix='.mlimage-', suffix='.Dockerfile', delete=False
        ) as f:
            f.write(recipe.render())
        dockerfile = Path(f.name)
        log.info(f"Building {tag} in {context} ({len(recipe)} steps)")

        build_log: List[str] = []
        current_step: Optional[int] = None
        start_time = time.time()

        try:
            for chunk in self.client.api.build(
                path=str(context),
                dockerfile=dockerfile.name,
                tag=tag,
                rm=True,
                forcerm=True,
                nocache=nocache,
                decode=True,
            ):
                if 'error' in chunk:
                    message = (chunk.get('errorDetail') or {}).get('message') or chunk['error']
                    raise BuildFailedError(message.strip(), step=current_step, log=build_log)

                line = (chunk.get('stream') or '').rstrip()
                if not line:
                    continue
                build_log.append(line)

                match = STEP_LINE.match(line)
                if match:
                    current_step = int(match.group(1))
                    self.metrics.record_step()
                    log.info(line, extra={'step': current_step})
                else:
                    log.debug(line)

        except BuildFailedError as e:
            self.metrics.record_build(time.time() - start_time, 'failed')
            log.error(str(e))
            raise
        except APIError as e:
            self.metrics.record_build(time.time() - start_time, 'failed')
            log.error(f"Build request failed: {e}")
            raise BuildFailedError(str(e), step=current_step, log=build_log) from e
        finally:
            dockerfile.unlink(missing_ok=True)

        duration = time.time() - start_time
        self.metrics.record_build(duration, 'success')
        log.info(f"Built {tag} in {duration:.1f}s")

        return self.inspect(tag)

    def run(
        self,
        image: str,
        command: Optional[Union[str, Sequence[str]]] = None,
        volumes: Optional[Sequence[str]] = None,
        gpus: bool = False,
        environment: Optional[Dict[str, str]] = None,
        workdir: Optional[str] = None
    ) -> str:
        """
        Run a container to completion and return its output.

        Args:
            image: Image to run
            command: Command (default: the image's CMD)
            volumes: 'host:container[:mode]' mounts
            gpus: Pass all GPUs through
            environment: Extra environment variables
            workdir: Working directory override

        Returns:
            Container output

        Raises:
            ContainerRunError: The command exited non-zero
        """
        kwargs: Dict[str, Any] = {
            'command': list(command) if command is not None and not isinstance(command, str) else command,
            'remove': True,
            'stdout': True,
            'stderr': True,
            'environment': environment,
            'volumes': parse_volume_specs(volumes),
        }
        if workdir:
            kwargs['working_dir'] = workdir
        if gpus:
            kwargs['device_requests'] = [DeviceRequest(count=-1, capabilities=[['gpu']])]

        logger.info(f"Running {image}" + (" with GPUs" if gpus else ""))

        try:
            output = self.client.containers.run(image, **kwargs)
        except ContainerError as e:
            stderr = e.stderr.decode('utf-8', errors='replace') if isinstance(e.stderr, bytes) else (e.stderr or '')
            logger.error(f"Container from {image} exited with status {e.exit_status}")
            raise ContainerRunError(
                f"Command in {image} exited with status {e.exit_status}: {stderr.strip()}",
                exit_status=e.exit_status,
                output=stderr,
            ) from e
        except ImageNotFound as e:
            raise ImageNotFoundError(f"Image {image} not found") from e
        except APIError as e:
            raise EngineError(f"Failed to run {image}: {e}") from e

        if isinstance(output, bytes):
            return output.decode('utf-8', errors='replace')
        return output or ''

    def shell(
        self,
        image: str,
        volumes: Optional[Sequence[str]] = None,
        gpus: bool = False,
        workdir: Optional[str] = None,
        command: Optional[Sequence[str]] = None
    ) -> int:
        """
        Start an interactive container attached to this terminal.

        The SDK cannot hand over a TTY, so this goes through the docker CLI.

        Returns:
            Exit code of `docker run`
        """
        docker_cli = shutil.which('docker')
        if not docker_cli:
            raise EngineError("The docker CLI is required for interactive runs but is not on PATH")

        args = [docker_cli, 'run', '--rm', '-it']
        if gpus:
            args.extend(['--gpus', 'all'])
        for host, bind in parse_volume_specs(volumes).items():
            args.extend(['-v', f"{host}:{bind['bind']}:{bind['mode']}"])
        if workdir:
            args.extend(['-w', workdir])
        args.append(image)
        args.extend(command or [])

        logger.info(f"Starting interactive shell in {image}")
        return subprocess.run(args, check=False).returncode

    def save(self, image: str, output_path: Union[str, Path]) -> Path:
        """
        Export an image to a tar archive.

        The archive is streamed to a `.partial` file next to the target and
        only renamed into place once complete.

        Returns:
            Path of the written archive
        """
        img = self._get_image(image)
        output_path = Path(output_path)
        output_path.parent.mkdir(parents=True, exist_ok=True)
        partial = output_path.with_name(output_path.name + '.partial')

        reference = normalize_reference(image)
        named = reference if reference in img.tags else False

        logger.info(f"Saving {image} to {output_path}")
        try:
            with open(partial, 'wb') as f:
                for chunk in img.save(named=named):
                    f.write(chunk)
            partial.replace(output_path)
        except APIError as e:
            self.metrics.record_distribution('save', 'failed')
            raise EngineError(f"Failed to save {image}: {e}") from e
        finally:
            partial.unlink(missing_ok=True)

        self.metrics.record_distribution('save', 'success')
        return output_path

    def load(self, input_path: Union[str, Path]) -> List[ImageInfo]:
        """
        Import images from a tar archive.

        Returns:
            Loaded images
        """
        input_path = Path(input_path)
        logger.info(f"Loading images from {input_path}")

        try:
            with open(input_path, 'rb') as f:
                images = self.client.images.load(f)
        except APIError as e:
            self.metrics.record_distribution('load', 'failed')
            raise EngineError(f"Failed to load {input_path}: {e}") from e

        self.metrics.record_distribution('load', 'success')
        loaded = [ImageInfo.from_image(image) for image in images]
        for info in loaded:
            logger.info(f"Loaded {info.id} {' '.join(info.tags)}".rstrip())
        return loaded

    def tag(self, image: str, new_name: str) -> str:
        """
        Give an image another name.

        Returns:
            The normalized new reference
        """
        img = self._get_image(image)
        repository, tag = split_reference(new_name)

        try:
            tagged = img.tag(repository, tag=tag)
        except APIError as e:
            self.metrics.record_distribution('tag', 'failed')
            raise EngineError(f"Failed to tag {image} as {new_name}: {e}") from e

        if not tagged:
            self.metrics.record_distribution('tag', 'failed')
            raise EngineError(f"Engine refused to tag {image} as {new_name}")

        self.metrics.record_distribution('tag', 'success')
        logger.info(f"Tagged {image} as {repository}:{tag}")
        return f"{repository}:{tag}"

    def push(self, name: str, auth_config: Optional[Dict[str, str]] = None) -> Optional[str]:
        """
        Push an image to its registry.

        Returns:
            Manifest digest reported by the registry, if any

        Raises:
            RegistryError: The registry rejected the push
        """
        repository, tag = split_reference(name)
        logger.info(f"Pushing {repository}:{tag}")
        digest = None

        try:
            for chunk in self.client.images.push(
                repository, tag=tag, stream=True, decode=True, auth_config=auth_config
            ):
                if 'error' in chunk:
                    message = (chunk.get('errorDetail') or {}).get('message') or chunk['error']
                    raise RegistryError(f"Push of {repository}:{tag} failed: {message}")
                digest = (chunk.get('aux') or {}).get('Digest', digest)
                if chunk.get('status'):
                    logger.debug(f"{chunk.get('id', '')} {chunk['status']}".strip())
        except RegistryError:
            self.metrics.record_distribution('push', 'failed')
            raise
        except APIError as e:
            self.metrics.record_distribution('push', 'failed')
            raise RegistryError(f"Push of {repository}:{tag} failed: {e}") from e

        self.metrics.record_distribution('push', 'success')
        logger.info(f"Pushed {repository}:{tag}" + (f" ({digest})" if digest else ""))
        return digest

    def pull(self, name: str) -> ImageInfo:
        """
        Pull an image from its registry.

        Raises:
            RegistryError: The image could not be fetched
        """
        repository, tag = split_reference(name)
        logger.info(f"Pulling {repository}:{tag}")

        try:
            image = self.client.images.pull(repository, tag=tag)
        except APIError as e:
            self.metrics.record_distribution('pull', 'failed')
            raise RegistryError(f"Pull of {repository}:{tag} failed: {e}") from e

        self.metrics.record_distribution('pull', 'success')
        return ImageInfo.from_image(image)
