"""Exceptions raised while building the command model.

All of them inherit from CommandError. Tokenization, classification and
lookup failures abort `Command.create_from_string`; dry-run failures are
normally recorded on the command instead of being raised.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from irscope.command import Command


class CommandError(Exception):
    """Base class for all irscope exceptions.

    Attributes:
        message (str): the error message
    """

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)


class MalformedInputError(CommandError):
    """The command line could not be split into arguments
    (e.g., an unterminated quote)."""


class UnsupportedToolchainError(CommandError):
    """The executable is not one of the recognized toolchains.

    Attributes:
        executable (str): the first token of the command line
    """

    def __init__(self, executable: str) -> None:
        self.executable = executable
        super().__init__(f"Unsupported toolchain: {executable}")


class ToolchainNotFoundError(CommandError):
    """The toolchain executable could not be found or executed.

    Attributes:
        executable (str): the executable that was looked up
    """

    def __init__(self, executable: str, reason: str | None = None) -> None:
        self.executable = executable
        message = f"{executable} is not in PATH or not executable"
        if reason:
            message += f" ({reason})"
        super().__init__(message)


class DryRunFailedError(CommandError):
    """The toolchain ran but its dry run exited with an error or timed out.

    Attributes:
        command (Command | None):
            the command whose jobs were being discovered, set by the caller
            that owns the command
    """

    def __init__(self, message: str) -> None:
        self.command: Command | None = None
        super().__init__(message)

    @staticmethod
    def from_process_output(
        cmd: str, returncode: int, output: str
    ) -> DryRunFailedError:
        """Builds the error from a finished dry run.

        Args:
            cmd (str): the dry-run command line
            returncode (int): the exit status
            output (str): combined stdout and stderr of the process

        Returns:
            DryRunFailedError:
                error containing the command and everything it printed
        """
        message = f"{cmd}\nexited with status {returncode}"
        if output:
            message += "\nOUTPUT====\n" + output
        return DryRunFailedError(message)

    @staticmethod
    def from_timeout(cmd: str, timeout_s: float) -> DryRunFailedError:
        return DryRunFailedError(f"{cmd}\ntimed out after {timeout_s}s")
