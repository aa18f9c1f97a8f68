"""
Recipe steps: one directive plus its payload.

Each step renders to exactly one Dockerfile instruction. Steps are immutable;
the layer a step produces is identified by its rendered text and the identity
of the layer underneath it.
"""

import hashlib
import json
import os
import re
import shlex
from dataclasses import dataclass
from enum import Enum
from typing import Dict, FrozenSet, Iterable, Optional, Sequence, Set, Tuple, Union


class Directive(Enum):
    """Instruction kinds a recipe may contain."""
    FROM = "FROM"
    ENV = "ENV"
    RUN = "RUN"
    WORKDIR = "WORKDIR"
    CMD = "CMD"


Payload = Union[str, Tuple[str, ...], Tuple[Tuple[str, str], ...]]

_VAR_REF = re.compile(r'\$(?:\{(\w+)\}|(\w+))')
_SEGMENT_SPLIT = re.compile(r'&&|\|\||;|\|')
_ASSIGNMENT = re.compile(r'^\w+=')
_INSTALLER_SCRIPT = re.compile(
    r'(?i)(miniconda|miniforge|mambaforge|anaconda)[\w.-]*\.sh$'
)
_PACKAGE_INSTALLERS = {
    'apt-get': 'install',
    'apt': 'install',
    'yum': 'install',
    'dnf': 'install',
    'apk': 'add',
}
_COMMAND_PREFIXES = ('sudo', 'env', 'exec', 'time')


def infer_tools(command: str) -> Tuple[FrozenSet[str], FrozenSet[str]]:
    """
    Infer which executables a shell command uses and which it installs.

    Args:
        command: Shell-form RUN command

    Returns:
        (requires, provides) tool-name sets
    """
    requires: Set[str] = set()
    provides: Set[str] = set()

    for segment in _SEGMENT_SPLIT.split(command):
        try:
            tokens = shlex.split(segment)
        except ValueError:
            tokens = segment.split()

        while tokens and (_ASSIGNMENT.match(tokens[0]) or tokens[0] in _COMMAND_PREFIXES):
            tokens = tokens[1:]
        if not tokens:
            continue

        executable = os.path.basename(tokens[0])
        requires.add(executable)
        args = tokens[1:]

        verb = _PACKAGE_INSTALLERS.get(executable)
        if verb and verb in args:
            after = args[args.index(verb) + 1:]
            provides.update(a for a in after if not a.startswith('-'))

        if executable in ('bash', 'sh'):
            for arg in args:
                match = _INSTALLER_SCRIPT.search(os.path.basename(arg))
                if match:
                    provides.add('conda')
                    if match.group(1).lower() in ('miniforge', 'mambaforge'):
                        provides.add('mamba')

    return frozenset(requires), frozenset(provides)


def variable_references(text: str) -> Set[str]:
    """Names referenced as $VAR or ${VAR} in text."""
    return {a or b for a, b in _VAR_REF.findall(text)}


def expand_variables(text: str, environment: Dict[str, str]) -> str:
    """Expand $VAR and ${VAR}; unknown names expand to an empty string."""
    return _VAR_REF.sub(lambda m: environment.get(m.group(1) or m.group(2), ''), text)


def _quote_env_value(value: str) -> str:
    if value and not re.search(r"[\s\"'\\]", value):
        return value
    escaped = value.replace('\\', '\\\\').replace('"', '\\"')
    return f'"{escaped}"'


@dataclass(frozen=True)
class Step:
    """
    A single recipe step.

    The payload is a string for FROM, WORKDIR and shell-form RUN/CMD, a tuple
    of arguments for exec-form RUN/CMD, and a tuple of (key, value) pairs for
    ENV. `requires` and `provides` name tools for order validation and are
    never rendered.
    """
    directive: Directive
    payload: Payload
    comment: Optional[str] = None
    requires: FrozenSet[str] = frozenset()
    provides: FrozenSet[str] = frozenset()

    @classmethod
    def from_image(cls, reference: str, comment: Optional[str] = None) -> 'Step':
        return cls(Directive.FROM, reference.strip(), comment)

    @classmethod
    def env(cls, pairs: Union[Dict[str, str], Iterable[Tuple[str, str]]],
            comment: Optional[str] = None) -> 'Step':
        items = pairs.items() if isinstance(pairs, dict) else pairs
        return cls(Directive.ENV, tuple((str(k), str(v)) for k, v in items), comment)

    @classmethod
    def run(cls, command: Union[str, Sequence[str]], comment: Optional[str] = None,
            requires: Optional[Iterable[str]] = None,
            provides: Optional[Iterable[str]] = None) -> 'Step':
        """
        Build a RUN step.

        Tool sets are inferred from shell-form commands unless given.
        """
        if isinstance(command, str):
            payload: Payload = command.strip()
            inferred_requires, inferred_provides = infer_tools(payload)
        else:
            payload = tuple(command)
            inferred_requires, inferred_provides = infer_tools(shlex.join(payload))

        return cls(
            Directive.RUN,
            payload,
            comment,
            frozenset(requires) if requires is not None else inferred_requires,
            frozenset(provides) if provides is not None else inferred_provides,
        )

    @classmethod
    def workdir(cls, path: str, comment: Optional[str] = None) -> 'Step':
        return cls(Directive.WORKDIR, path.strip(), comment)

    @classmethod
    def cmd(cls, command: Union[str, Sequence[str]], comment: Optional[str] = None) -> 'Step':
        payload = command.strip() if isinstance(command, str) else tuple(command)
        return cls(Directive.CMD, payload, comment)

    @property
    def is_exec_form(self) -> bool:
        return self.directive in (Directive.RUN, Directive.CMD) and isinstance(self.payload, tuple)

    @property
    def env_pairs(self) -> Tuple[Tuple[str, str], ...]:
        if self.directive is not Directive.ENV:
            return ()
        return self.payload  # type: ignore[return-value]

    def is_empty(self) -> bool:
        if isinstance(self.payload, str):
            return not self.payload.strip()
        return len(self.payload) == 0

    def render(self) -> str:
        """Render the step as one Dockerfile instruction."""
        keyword = self.directive.value

        if self.directive is Directive.ENV:
            body = ' '.join(f"{k}={_quote_env_value(v)}" for k, v in self.env_pairs)
        elif self.is_exec_form:
            body = json.dumps(list(self.payload))
        elif self.directive is Directive.RUN and ' && ' in self.payload:
            # One command per line keeps long install chains readable
            body = ' \\\n    && '.join(part.strip() for part in self.payload.split(' && '))
        else:
            body = self.payload

        return f"{keyword} {body}"

    def cache_key(self, parent_key: Optional[str] = None) -> str:
        """
        Identity of the layer this step produces on top of parent_key.

        Two steps share a key only when their rendered text and everything
        beneath them match.
        """
        digest = hashlib.sha256()
        digest.update((parent_key or '').encode('utf-8'))
        digest.update(b'\n')
        digest.update(self.render().encode('utf-8'))
        return digest.hexdigest()
