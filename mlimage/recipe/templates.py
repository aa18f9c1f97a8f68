"""
Recipe templates.

`conda_gpu_recipe` produces the image the tutorial walks through: a CUDA base
image, Miniconda, a named conda environment and a GPU build of a numerics
library, with the environment already on PATH when the container starts.
"""

from dataclasses import dataclass
from typing import Dict, List, Tuple

from ..common.config import Config
from ..common.errors import RecipeError
from ..common.logger import get_logger
from .recipe import Recipe, RecipeBuilder

logger = get_logger(__name__)


@dataclass(frozen=True)
class NumericsLibrary:
    """How to install and check one numerics library."""
    name: str
    import_name: str
    conda_channels: Tuple[str, ...]
    conda_packages: Tuple[str, ...]
    pip_packages: Tuple[str, ...]
    version_expr: str
    gpu_expr: str

    def packages(self, toolkit: str) -> Tuple[List[str], List[str]]:
        """Conda and pip package specs with the toolkit version filled in."""
        conda = [p.format(toolkit=toolkit) for p in self.conda_packages]
        pip = [p.format(toolkit=toolkit, toolkit_major=toolkit.split('.')[0])
               for p in self.pip_packages]
        return conda, pip

    def check_snippet(self) -> str:
        """Python source printing the version, then the GPU flag, one per line."""
        return (
            f"import {self.import_name}; "
            f"print({self.version_expr}); "
            f"print({self.gpu_expr})"
        )


NUMERICS_LIBRARIES: Dict[str, NumericsLibrary] = {
    'pytorch': NumericsLibrary(
        name='pytorch',
        import_name='torch',
        conda_channels=('pytorch', 'nvidia'),
        conda_packages=('pytorch', 'pytorch-cuda={toolkit}'),
        pip_packages=(),
        version_expr='torch.__version__',
        gpu_expr='torch.cuda.is_available()',
    ),
    'jax': NumericsLibrary(
        name='jax',
        import_name='jax',
        conda_channels=(),
        conda_packages=(),
        pip_packages=('jax[cuda{toolkit_major}]',),
        version_expr='jax.__version__',
        gpu_expr="any(d.platform == 'gpu' for d in jax.devices())",
    ),
}


def get_library(name: str) -> NumericsLibrary:
    try:
        return NUMERICS_LIBRARIES[name]
    except KeyError:
        raise RecipeError(
            f"Unknown numerics library '{name}'. "
            f"Choose from: {', '.join(sorted(NUMERICS_LIBRARIES))}"
        ) from None


def _install_command(config: Config, library: NumericsLibrary) -> str:
    conda_specs, pip_specs = library.packages(config.accelerator_toolkit)
    commands = []

    if conda_specs:
        args = ['conda', 'install', '-y', '-n', config.env_name]
        for channel in library.conda_channels:
            args.extend(['-c', channel])
        commands.append(' '.join(args + conda_specs))
    if pip_specs:
        quoted = ' '.join(f'"{p}"' for p in pip_specs)
        commands.append(f"conda run -n {config.env_name} pip install --no-cache-dir {quoted}")

    commands.append("conda clean -afy")
    return ' && '.join(commands)


def conda_gpu_recipe(config: Config) -> Recipe:
    """
    Build the conda + GPU numerics recipe.

    Args:
        config: Versions, paths and library selection

    Returns:
        Validated recipe
    """
    library = get_library(config.numerics_library)
    conda_dir = config.conda_dir.rstrip('/')
    env_prefix = config.env_prefix

    builder = RecipeBuilder()
    builder.from_image(config.base_image, comment="CUDA runtime base image")
    builder.env(
        comment="No interactive prompts during package installation",
        DEBIAN_FRONTEND='noninteractive',
        CONDA_DIR=conda_dir,
    )
    builder.env(PATH="$CONDA_DIR/bin:$PATH")
    builder.run(
        "apt-get update"
        f" && apt-get install -y --no-install-recommends {' '.join(config.system_packages)}"
        " && rm -rf /var/lib/apt/lists/*",
        comment="System packages needed to fetch and unpack Miniconda",
    )
    builder.run(
        f"wget -q {config.conda_installer_url} -O /tmp/miniconda.sh"
        " && bash /tmp/miniconda.sh -b -p $CONDA_DIR"
        " && rm /tmp/miniconda.sh",
        comment="Install the conda environment manager",
    )
    builder.run(
        f"conda create -y -n {config.env_name} python={config.python_version}"
        " && conda clean -afy",
        comment=f"Create the '{config.env_name}' environment",
    )
    builder.run(
        _install_command(config, library),
        comment=f"{library.name} with CUDA {config.accelerator_toolkit} support",
    )
    builder.run(
        "conda init bash"
        f" && echo 'conda activate {config.env_name}' >> ~/.bashrc",
        comment="Activate the environment in interactive shells",
    )
    builder.env(
        comment="Put the environment first on PATH for non-interactive commands too",
        CONDA_DEFAULT_ENV=config.env_name,
        PATH=f"{env_prefix}/bin:$PATH",
    )
    builder.workdir(config.workdir)
    builder.cmd(['/bin/bash'])

    header = (
        f"Conda environment '{config.env_name}' (Python {config.python_version}) "
        f"with {library.name} on {config.base_image}"
    )
    recipe = builder.build(header=header)
    logger.info(f"Rendered {library.name} recipe with {len(recipe)} steps")
    return recipe


def verification_command(config: Config) -> List[str]:
    """Exec-form command that prints the library version and GPU flag."""
    library = get_library(config.numerics_library)
    return ['python', '-c', library.check_snippet()]
