#!/usr/bin/env python3
"""
Command-line interface for mlimage.

Renders and checks build recipes, and drives the container engine through
the build, run, verify and distribution steps of the tutorial.
"""

import argparse
import dataclasses
import sys
from pathlib import Path
from typing import List, Optional

import yaml

from .common.config import Config
from .common.errors import MlImageError
from .common.logger import get_logger, setup_logging
from .distribution import export_image, fetch, import_image, publish
from .engine.docker_client import ContainerEngine
from .metrics import start_metrics_server
from .recipe.parser import load_recipe
from .recipe.templates import NUMERICS_LIBRARIES, conda_gpu_recipe
from .verify import compare_images, verify_image

logger = get_logger("mlimage")

RECIPE_OVERRIDES = {
    'base_image': 'base_image',
    'library': 'numerics_library',
    'toolkit': 'accelerator_toolkit',
    'python': 'python_version',
    'env_name': 'env_name',
}


def load_config(args: argparse.Namespace) -> Config:
    """Config from environment, optional YAML file, then command-line flags."""
    overrides = {
        field: getattr(args, flag)
        for flag, field in RECIPE_OVERRIDES.items()
        if getattr(args, flag, None) is not None
    }

    if args.config:
        config = Config.from_yaml(args.config, overrides)
    else:
        config = dataclasses.replace(Config(), **overrides)

    config.validate()
    return config


def _recipe_for(args: argparse.Namespace, config: Config):
    if getattr(args, 'file', None):
        recipe = load_recipe(args.file)
        recipe.validate()
        return recipe
    return conda_gpu_recipe(config)


def cmd_render(args: argparse.Namespace, config: Config) -> int:
    text = _recipe_for(args, config).render()
    if args.output:
        Path(args.output).write_text(text, encoding='utf-8')
        logger.info(f"Wrote recipe to {args.output}")
    else:
        sys.stdout.write(text)
    return 0


def cmd_lint(args: argparse.Namespace, config: Config) -> int:
    recipe = load_recipe(args.file)
    recipe.validate()
    for number, (step, key) in enumerate(zip(recipe, recipe.layer_keys()), start=1):
        first_line = step.render().splitlines()[0]
        print(f"{number:>3} {key[:12]} {first_line}")
    print(f"{len(recipe)} steps OK")
    return 0


def cmd_build(args: argparse.Namespace, config: Config) -> int:
    recipe = _recipe_for(args, config)
    engine = ContainerEngine()
    info = engine.build(
        recipe,
        args.tag or config.image_tag,
        context_path=args.context,
        nocache=args.no_cache,
    )
    print(info.id)
    return 0


def cmd_shell(args: argparse.Namespace, config: Config) -> int:
    engine = ContainerEngine()
    return engine.shell(
        args.image or config.image_tag,
        volumes=args.volume,
        gpus=args.gpus,
        workdir=args.workdir,
    )


def cmd_verify(args: argparse.Namespace, config: Config) -> int:
    engine = ContainerEngine()
    result = verify_image(engine, args.image or config.image_tag, config, gpus=args.gpus)
    print(result.version)
    print(result.gpu_available)
    return 0


def cmd_compare(args: argparse.Namespace, config: Config) -> int:
    engine = ContainerEngine()
    comparison = compare_images(engine, args.first, args.second, config.env_name)

    for key, (a, b) in comparison.env_diff.items():
        print(f"env {key}: {a!r} != {b!r}")
    for package in comparison.only_in_first:
        print(f"- {package}")
    for package in comparison.only_in_second:
        print(f"+ {package}")

    if comparison.identical:
        print("identical")
        return 0
    return 1


def cmd_save(args: argparse.Namespace, config: Config) -> int:
    engine = ContainerEngine()
    manifest = export_image(engine, args.image or config.image_tag, args.output)
    print(f"{manifest.sha256}  {manifest.path}")
    return 0


def cmd_load(args: argparse.Namespace, config: Config) -> int:
    engine = ContainerEngine()
    for info in import_image(engine, args.input, verify_checksum=not args.skip_checksum):
        print(' '.join([info.id] + info.tags))
    return 0


def cmd_tag(args: argparse.Namespace, config: Config) -> int:
    engine = ContainerEngine()
    print(engine.tag(args.image, args.new_name))
    return 0


def cmd_push(args: argparse.Namespace, config: Config) -> int:
    engine = ContainerEngine()
    image = args.image or config.image_tag
    repository = args.repository or config.registry
    if repository:
        print(publish(engine, image, repository, args.tag))
    else:
        digest = engine.push(image)
        print(digest or image)
    return 0


def cmd_pull(args: argparse.Namespace, config: Config) -> int:
    engine = ContainerEngine()
    info = fetch(engine, args.name)
    print(' '.join([info.id] + info.tags))
    return 0


def _add_recipe_options(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("-f", "--file", help="Use this Dockerfile instead of the template")
    parser.add_argument("--base-image", dest="base_image", help="Base image reference")
    parser.add_argument("--library", choices=sorted(NUMERICS_LIBRARIES), help="Numerics library")
    parser.add_argument("--toolkit", help="Accelerator toolkit version, e.g. 11.8")
    parser.add_argument("--python", help="Python version for the environment")
    parser.add_argument("--env-name", dest="env_name", help="Conda environment name")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="mlimage",
        description="Build, verify and distribute a conda + GPU numerics container image",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""\
Examples:
  mlimage render -o Dockerfile
  mlimage build --tag ml-env:latest
  mlimage verify ml-env:latest
  mlimage save ml-env:latest -o ml-env.tar
  mlimage push ml-env:latest --repository registry.example.com/team/ml-env
""",
    )
    parser.add_argument("--config", help="YAML configuration file")
    parser.add_argument("--log-level", dest="log_level", help="DEBUG, INFO, WARNING or ERROR")
    parser.add_argument("--json-logs", dest="json_logs", action="store_true",
                        help="Emit structured JSON logs")

    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("render", help="Print or write the recipe as a Dockerfile")
    _add_recipe_options(p)
    p.add_argument("-o", "--output", help="Write to this file instead of stdout")
    p.set_defaults(func=cmd_render)

    p = sub.add_parser("lint", help="Parse and validate a Dockerfile")
    p.add_argument("file", help="Dockerfile to check")
    p.set_defaults(func=cmd_lint)

    p = sub.add_parser("build", help="Build the image")
    _add_recipe_options(p)
    p.add_argument("-t", "--tag", help="Image name (default: MLIMAGE_IMAGE_TAG)")
    p.add_argument("--context", default=".", help="Build context directory (default: .)")
    p.add_argument("--no-cache", dest="no_cache", action="store_true", help="Ignore cached layers")
    p.set_defaults(func=cmd_build)

    p = sub.add_parser("shell", help="Start an interactive shell in the image")
    p.add_argument("image", nargs="?", help="Image name (default: MLIMAGE_IMAGE_TAG)")
    p.add_argument("-v", "--volume", action="append", default=[],
                   help="Mount host:container[:mode]; repeatable")
    p.add_argument("--gpus", action="store_true", help="Pass all GPUs through")
    p.add_argument("-w", "--workdir", help="Working directory inside the container")
    p.set_defaults(func=cmd_shell)

    p = sub.add_parser("verify", help="Print library version and GPU availability")
    _add_recipe_options(p)
    p.add_argument("image", nargs="?", help="Image name (default: MLIMAGE_IMAGE_TAG)")
    p.add_argument("--no-gpus", dest="gpus", action="store_false", help="Run without GPU passthrough")
    p.set_defaults(func=cmd_verify)

    p = sub.add_parser("compare", help="Compare environment and packages of two images")
    _add_recipe_options(p)
    p.add_argument("first")
    p.add_argument("second")
    p.set_defaults(func=cmd_compare)

    p = sub.add_parser("save", help="Export the image to a tar archive")
    p.add_argument("image", nargs="?", help="Image name (default: MLIMAGE_IMAGE_TAG)")
    p.add_argument("-o", "--output", required=True, help="Archive path")
    p.set_defaults(func=cmd_save)

    p = sub.add_parser("load", help="Import images from a tar archive")
    p.add_argument("input", help="Archive path")
    p.add_argument("--skip-checksum", dest="skip_checksum", action="store_true",
                   help="Do not check the .sha256 sidecar")
    p.set_defaults(func=cmd_load)

    p = sub.add_parser("tag", help="Give an image another name")
    p.add_argument("image")
    p.add_argument("new_name")
    p.set_defaults(func=cmd_tag)

    p = sub.add_parser("push", help="Push the image to a registry")
    p.add_argument("image", nargs="?", help="Image name (default: MLIMAGE_IMAGE_TAG)")
    p.add_argument("--repository", help="Tag into this registry repository before pushing")
    p.add_argument("--tag", help="Tag to use with --repository (default: the image's tag)")
    p.set_defaults(func=cmd_push)

    p = sub.add_parser("pull", help="Pull an image from a registry")
    p.add_argument("name")
    p.set_defaults(func=cmd_pull)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        config = load_config(args)
    except (OSError, ValueError, yaml.YAMLError) as e:
        setup_logging(args.log_level or 'INFO', args.json_logs)
        logger.error(f"Invalid configuration: {e}")
        return 2

    setup_logging(args.log_level or config.log_level, args.json_logs or config.log_structured)

    if config.metrics_port:
        start_metrics_server(config.metrics_port)

    try:
        return args.func(args, config)
    except MlImageError as e:
        logger.error(str(e))
        return 1
    except OSError as e:
        logger.error(f"{e.strerror or e}: {e.filename or ''}".rstrip(': '))
        return 1


if __name__ == "__main__":
    sys.exit(main())
