"""
mlimage: build, verify and distribute a conda + GPU numerics container image.
"""

from .common.config import Config
from .recipe import Recipe, RecipeBuilder, Step, conda_gpu_recipe, parse_dockerfile

__version__ = "0.1.0"

__all__ = [
    'Config',
    'Recipe',
    'RecipeBuilder',
    'Step',
    'conda_gpu_recipe',
    'parse_dockerfile',
]
