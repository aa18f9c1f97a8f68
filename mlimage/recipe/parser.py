"""
Dockerfile parser producing recipes.

Only the directives a recipe models are accepted: FROM, ENV, RUN, WORKDIR
and CMD.
"""

import json
import shlex
from pathlib import Path
from typing import List, Optional, Tuple, Union

from ..common.errors import RecipeParseError
from ..common.logger import get_logger
from .recipe import Recipe
from .steps import Directive, Step

logger = get_logger(__name__)


def _logical_lines(text: str) -> List[Tuple[int, Optional[str], Optional[str]]]:
    """
    Join continuations and split comments from instructions.

    Returns:
        (line_number, instruction, comment) triples. Exactly one of
        instruction and comment is set, or neither for a blank line.
    """
    result = []
    pending: List[str] = []
    start = 0

    for number, raw in enumerate(text.splitlines(), start=1):
        stripped = raw.strip()

        if pending:
            # Comments and blank lines inside a continuation are dropped
            if not stripped or stripped.startswith('#'):
                continue
        else:
            if not stripped:
                result.append((number, None, None))
                continue
            if stripped.startswith('#'):
                result.append((number, None, stripped[1:].strip()))
                continue
            start = number

        if stripped.endswith('\\'):
            pending.append(stripped[:-1].rstrip())
            continue

        pending.append(stripped)
        result.append((start, ' '.join(p for p in pending if p), None))
        pending = []

    if pending:
        raise RecipeParseError("unterminated line continuation", start)

    return result


def _parse_exec_or_shell(argument: str) -> Union[str, Tuple[str, ...]]:
    """Exec form when the argument is a JSON array of strings, else shell form."""
    if not argument.startswith('['):
        return argument

    try:
        value = json.loads(argument)
    except json.JSONDecodeError:
        # e.g. RUN [ -d /opt/conda ] || echo missing
        return argument

    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        return argument
    return tuple(value)


def _parse_env(argument: str, line: int) -> Tuple[Tuple[str, str], ...]:
    first = argument.split(None, 1)[0]

    if '=' not in first:
        # Legacy form: ENV key value with spaces
        parts = argument.split(None, 1)
        if len(parts) < 2:
            raise RecipeParseError(f"ENV {parts[0]} has no value", line)
        return ((parts[0], parts[1]),)

    try:
        tokens = shlex.split(argument)
    except ValueError as e:
        raise RecipeParseError(f"malformed ENV: {e}", line) from e

    pairs = []
    for token in tokens:
        if '=' not in token:
            raise RecipeParseError(f"expected key=value, got '{token}'", line)
        key, value = token.split('=', 1)
        if not key:
            raise RecipeParseError("ENV key is empty", line)
        pairs.append((key, value))
    return tuple(pairs)


def parse_dockerfile(text: str) -> Recipe:
    """
    Parse Dockerfile text into a recipe.

    A comment block at the very top that is followed by a blank line becomes
    the recipe header. Other comments attach to the instruction right below
    them.

    Raises:
        RecipeParseError: Unsupported directive or malformed argument
    """
    steps: List[Step] = []
    header: Optional[str] = None
    comments: List[str] = []

    for line, instruction, comment in _logical_lines(text):
        if comment is not None:
            comments.append(comment)
            continue

        if instruction is None:
            if comments and not steps and header is None:
                header = '\n'.join(comments)
            comments = []
            continue

        parts = instruction.split(None, 1)
        keyword = parts[0].upper()
        argument = parts[1].strip() if len(parts) > 1 else ''

        try:
            directive = Directive(keyword)
        except ValueError:
            raise RecipeParseError(f"unsupported directive '{parts[0]}'", line) from None

        if not argument:
            raise RecipeParseError(f"{keyword} requires an argument", line)

        step_comment = '\n'.join(comments) or None
        comments = []

        if directive is Directive.FROM:
            step = Step.from_image(argument, step_comment)
        elif directive is Directive.ENV:
            step = Step.env(_parse_env(argument, line), step_comment)
        elif directive is Directive.RUN:
            step = Step.run(_parse_exec_or_shell(argument), step_comment)
        elif directive is Directive.WORKDIR:
            step = Step.workdir(argument, step_comment)
        else:
            step = Step.cmd(_parse_exec_or_shell(argument), step_comment)

        steps.append(step)

    logger.debug(f"Parsed {len(steps)} steps")
    return Recipe(tuple(steps), header)


def load_recipe(path: Union[str, Path]) -> Recipe:
    """Read and parse a Dockerfile."""
    path = Path(path)
    logger.info(f"Loading recipe from {path}")
    return parse_dockerfile(path.read_text(encoding='utf-8'))
