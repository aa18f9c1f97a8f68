"""Exception hierarchy for mlimage."""

from typing import Optional


class MlImageError(Exception):
    """Base class for every error raised by mlimage."""


class RecipeError(MlImageError):
    """A recipe is malformed or cannot be built as written."""


class RecipeParseError(RecipeError):
    """A Dockerfile could not be parsed into a recipe."""

    def __init__(self, message: str, line: Optional[int] = None):
        self.line = line
        if line is not None:
            message = f"line {line}: {message}"
        super().__init__(message)


class RecipeOrderError(RecipeError):
    """A step uses a tool that only a later step installs."""

    def __init__(self, step_index: int, tool: str, provider_index: int):
        self.step_index = step_index
        self.tool = tool
        self.provider_index = provider_index
        super().__init__(
            f"step {step_index} requires '{tool}', "
            f"which is only installed by later step {provider_index}"
        )


class EngineError(MlImageError):
    """The container engine reported a failure."""


class BuildFailedError(EngineError):
    """An image build aborted; no image was tagged."""

    def __init__(self, message: str, step: Optional[int] = None, log: Optional[list] = None):
        self.step = step
        self.log = log or []
        if step is not None:
            message = f"build failed at step {step}: {message}"
        super().__init__(message)


class ContainerRunError(EngineError):
    """A container exited with a non-zero status."""

    def __init__(self, message: str, exit_status: Optional[int] = None, output: str = ''):
        self.exit_status = exit_status
        self.output = output
        super().__init__(message)


class ImageNotFoundError(EngineError):
    """The requested image does not exist locally."""


class RegistryError(EngineError):
    """A push or pull against a registry failed."""


class VerificationError(MlImageError):
    """The in-container library check did not produce a usable result."""


class ChecksumMismatchError(MlImageError):
    """An image archive does not match its recorded digest."""
