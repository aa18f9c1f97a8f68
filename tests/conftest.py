"""Pytest configuration and fixtures."""

from unittest.mock import MagicMock

import pytest
from prometheus_client import CollectorRegistry

from mlimage.common.config import Config
from mlimage.engine.docker_client import ContainerEngine
from mlimage.metrics import ImageMetrics
from mlimage.recipe.templates import conda_gpu_recipe


def _make_image(image_id='sha256:0123456789ab', tags=None, env=None, cmd=None,
               workdir='/workspace', layers=None):
    """Stand-in for a docker SDK Image object."""
    image = MagicMock()
    image.id = image_id
    image.tags = list(tags or [])
    image.attrs = {
        'Config': {
            'Env': [f"{k}={v}" for k, v in (env or {}).items()],
            'Cmd': cmd if cmd is not None else ['/bin/bash'],
            'WorkingDir': workdir,
        },
        'RootFS': {'Layers': list(layers or ['sha256:layer0'])},
    }
    return image


@pytest.fixture
def config():
    """Configuration independent of the caller's environment."""
    return Config(
        base_image='nvidia/cuda:11.8.0-cudnn8-runtime-ubuntu22.04',
        conda_installer_url='https://repo.anaconda.com/miniconda/Miniconda3-latest-Linux-x86_64.sh',
        conda_dir='/opt/conda',
        env_name='ml',
        python_version='3.10',
        numerics_library='pytorch',
        accelerator_toolkit='11.8',
        system_packages=['wget', 'bzip2', 'ca-certificates', 'git'],
        workdir='/workspace',
        image_tag='mlimage:latest',
        registry='',
        log_level='INFO',
        log_structured=False,
        metrics_port=0,
    )


@pytest.fixture
def recipe(config):
    return conda_gpu_recipe(config)


@pytest.fixture
def registry():
    return CollectorRegistry()


@pytest.fixture
def image_metrics(registry):
    return ImageMetrics(registry=registry)


@pytest.fixture
def docker_client():
    return MagicMock()


@pytest.fixture
def engine(docker_client, image_metrics):
    return ContainerEngine(client=docker_client, metrics=image_metrics)


@pytest.fixture
def make_image():
    """Factory for docker SDK Image stand-ins."""
    return _make_image
