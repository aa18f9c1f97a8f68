"""
Recipe: an ordered, immutable chain of build steps.
"""

from dataclasses import dataclass
from typing import Dict, Iterator, List, Optional, Sequence, Tuple, Union

from ..common.errors import RecipeError, RecipeOrderError
from ..common.logger import get_logger
from .steps import Directive, Step, expand_variables, variable_references

logger = get_logger(__name__)


@dataclass(frozen=True)
class Recipe:
    """
    A totally ordered sequence of steps.

    Every step builds on the filesystem and environment left by all steps
    before it, so order is significant. Reordering returns a new recipe.
    """
    steps: Tuple[Step, ...]
    header: Optional[str] = None

    def __post_init__(self):
        object.__setattr__(self, 'steps', tuple(self.steps))

    def __len__(self) -> int:
        return len(self.steps)

    def __iter__(self) -> Iterator[Step]:
        return iter(self.steps)

    def __getitem__(self, index: int) -> Step:
        return self.steps[index]

    def _last_payload(self, directive: Directive):
        for step in reversed(self.steps):
            if step.directive is directive:
                return step.payload
        return None

    @property
    def base_image(self) -> Optional[str]:
        return self._last_payload(Directive.FROM)

    @property
    def workdir(self) -> Optional[str]:
        return self._last_payload(Directive.WORKDIR)

    @property
    def default_command(self) -> Optional[Union[str, Tuple[str, ...]]]:
        return self._last_payload(Directive.CMD)

    def render(self) -> str:
        """Render the recipe as Dockerfile text."""
        blocks: List[str] = []
        if self.header:
            blocks.append('\n'.join(f"# {line}".rstrip() for line in self.header.splitlines()))

        for step in self.steps:
            lines = []
            if step.comment:
                lines.extend(f"# {line}".rstrip() for line in step.comment.splitlines())
            lines.append(step.render())
            blocks.append('\n'.join(lines))

        return '\n\n'.join(blocks) + '\n'

    def environment(self, initial: Optional[Dict[str, str]] = None) -> Dict[str, str]:
        """
        Effective environment after the last step.

        Args:
            initial: Environment inherited from the base image

        Returns:
            Variable name to expanded value
        """
        return self.environment_at(len(self.steps), initial)

    def environment_at(self, index: int, initial: Optional[Dict[str, str]] = None) -> Dict[str, str]:
        """Environment visible to the step at `index`."""
        env = dict(initial or {})
        for step in self.steps[:index]:
            if step.directive is not Directive.ENV:
                continue
            # All pairs of one instruction expand against the state before it
            before = dict(env)
            for key, value in step.env_pairs:
                env[key] = expand_variables(value, before)
        return env

    def layer_keys(self) -> List[str]:
        """Chained cache keys, one per step."""
        keys = []
        parent = None
        for step in self.steps:
            parent = step.cache_key(parent)
            keys.append(parent)
        return keys

    def swap(self, i: int, j: int) -> 'Recipe':
        """Return a new recipe with steps i and j exchanged."""
        steps = list(self.steps)
        steps[i], steps[j] = steps[j], steps[i]
        return Recipe(tuple(steps), self.header)

    def is_independent(self, i: int, j: int) -> bool:
        """
        True when steps i and j are ENV steps whose order cannot matter.

        They must assign disjoint keys and neither may reference a key the
        other assigns.
        """
        a, b = self.steps[i], self.steps[j]
        if a.directive is not Directive.ENV or b.directive is not Directive.ENV:
            return False

        keys_a = {k for k, _ in a.env_pairs}
        keys_b = {k for k, _ in b.env_pairs}
        if keys_a & keys_b:
            return False

        refs_a = set().union(*(variable_references(v) for _, v in a.env_pairs))
        refs_b = set().union(*(variable_references(v) for _, v in b.env_pairs))
        return not (refs_a & keys_b or refs_b & keys_a)

    def validate(self) -> bool:
        """
        Check the recipe can be built as ordered.

        Raises:
            RecipeError: Structural problem
            RecipeOrderError: A step uses a tool only a later step installs
        """
        if not self.steps:
            raise RecipeError("Recipe has no steps")

        if self.steps[0].directive is not Directive.FROM:
            raise RecipeError(
                f"Recipe must start with FROM, not {self.steps[0].directive.value}"
            )

        for index, step in enumerate(self.steps):
            if step.is_empty():
                raise RecipeError(f"Step {index} ({step.directive.value}) has an empty payload")
            if step.directive is Directive.WORKDIR and not str(step.payload).startswith(('/', '$')):
                raise RecipeError(f"Step {index}: WORKDIR must be absolute, got '{step.payload}'")

        self._validate_order()
        return True

    def _validate_order(self) -> None:
        first_provider: Dict[str, int] = {}
        for index, step in enumerate(self.steps):
            for tool in step.provides:
                first_provider.setdefault(tool, index)

        # Tools nobody installs are assumed to ship with the base image
        for index, step in enumerate(self.steps):
            for tool in sorted(step.requires):
                provider = first_provider.get(tool)
                if provider is not None and provider > index:
                    logger.debug(f"Step {index} uses {tool} before step {provider} installs it")
                    raise RecipeOrderError(index, tool, provider)


class RecipeBuilder:
    """
    Fluent builder for recipes.

    Builders compose with `|=`, which appends the other builder's steps.
    """

    def __init__(self, steps: Optional[Sequence[Step]] = None):
        self._steps: List[Step] = list(steps or [])

    def __ior__(self, other: 'RecipeBuilder') -> 'RecipeBuilder':
        self._steps.extend(other._steps)
        return self

    def __len__(self) -> int:
        return len(self._steps)

    def add(self, step: Step) -> 'RecipeBuilder':
        self._steps.append(step)
        return self

    def from_image(self, reference: str, comment: Optional[str] = None) -> 'RecipeBuilder':
        return self.add(Step.from_image(reference, comment))

    def env(self, comment: Optional[str] = None, **pairs: str) -> 'RecipeBuilder':
        return self.add(Step.env(pairs, comment))

    def run(self, command: Union[str, Sequence[str]], comment: Optional[str] = None) -> 'RecipeBuilder':
        return self.add(Step.run(command, comment))

    def workdir(self, path: str, comment: Optional[str] = None) -> 'RecipeBuilder':
        return self.add(Step.workdir(path, comment))

    def cmd(self, command: Union[str, Sequence[str]], comment: Optional[str] = None) -> 'RecipeBuilder':
        return self.add(Step.cmd(command, comment))

    def build(self, header: Optional[str] = None, validate: bool = True) -> Recipe:
        """Freeze the collected steps into a recipe."""
        recipe = Recipe(tuple(self._steps), header)
        if validate:
            recipe.validate()
        logger.debug(f"Built recipe with {len(recipe)} steps")
        return recipe
