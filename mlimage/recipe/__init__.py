"""Recipe model, Dockerfile parser and templates."""

from .parser import load_recipe, parse_dockerfile
from .recipe import Recipe, RecipeBuilder
from .steps import Directive, Step
from .templates import NUMERICS_LIBRARIES, conda_gpu_recipe, verification_command

__all__ = [
    'Directive',
    'Step',
    'Recipe',
    'RecipeBuilder',
    'parse_dockerfile',
    'load_recipe',
    'NUMERICS_LIBRARIES',
    'conda_gpu_recipe',
    'verification_command',
]
