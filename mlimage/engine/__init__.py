"""Container engine access."""

from .docker_client import ContainerEngine, ImageInfo

__all__ = ['ContainerEngine', 'ImageInfo']
