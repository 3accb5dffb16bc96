"""Staged commit of a single file into the storage tree.

A write runs through four stages in a fixed order: existence check,
directory creation, content materialization and permission normalization.
The first failing stage ends the run; later stages never execute. Stages
signal failure with :class:`StagingError`, which :meth:`StagingPipeline.run`
turns into a :class:`Failed` outcome, so callers always get a value back
for expected failures.
"""

import logging
import os
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional, Union

logger = logging.getLogger("storehouse.staging")

DIRECTORY_MODE = 0o755
FILE_MODE = 0o644


class ErrorKind(str, Enum):
    VALIDATION = "validation"
    AUTH = "auth"
    CONFLICT = "conflict"
    IO = "io"
    NETWORK = "network"

    @property
    def status(self) -> int:
        if self in (ErrorKind.IO, ErrorKind.NETWORK):
            return 500
        return 400


class StageState(str, Enum):
    IDLE = "idle"
    CHECKING_EXISTS = "checking_exists"
    CREATING_DIRECTORY = "creating_directory"
    MATERIALIZING = "materializing"
    ROLLING_BACK = "rolling_back"
    SETTING_PERMISSIONS = "setting_permissions"
    COMMITTED = "committed"
    FAILED = "failed"


class StagingError(Exception):
    """A stage failure carrying the error code reported to the client."""

    def __init__(self, kind: ErrorKind, error: str, message: str) -> None:
        super().__init__(message)
        self.kind = kind
        self.error = error
        self.message = message


class MaterializeError(StagingError):
    """Raised by materializers for failures that are not plain ``OSError``."""


@dataclass(frozen=True)
class Committed:
    path: str
    location: str
    size: int
    content_type: Optional[str] = None
    encoding: Optional[str] = None

    ok = True
    status = 200

    def to_payload(self) -> Dict[str, Any]:
        return {"path": self.path}


@dataclass(frozen=True)
class Failed:
    kind: ErrorKind
    error: str
    message: str

    ok = False

    @property
    def status(self) -> int:
        return self.kind.status

    @classmethod
    def from_error(cls, error: StagingError) -> "Failed":
        return cls(kind=error.kind, error=error.error, message=error.message)

    def to_payload(self) -> Dict[str, Any]:
        return {"error": self.error, "kind": self.kind.value, "message": self.message}


StagingOutcome = Union[Committed, Failed]


class Materializer:
    """Produces the file content at the target path.

    Subclasses implement ``__call__``. ``error_code`` is reported when the
    call fails with an ``OSError``; ``cleanup_on_failure`` asks the pipeline
    to delete whatever was left at the target before reporting.
    """

    error_code = "error moving file"
    cleanup_on_failure = False

    def __call__(self, target: str) -> None:  # pragma: no cover - interface
        raise NotImplementedError


def resolve_target(directory: str, relative_path: str) -> str:
    """Join a client path onto the storage root and normalize it."""

    return os.path.normpath(directory + os.sep + relative_path)


class StagingPipeline:
    """Runs the ordered stages for one target path at a time.

    Instances hold only the storage root and the overwrite policy, so one
    pipeline can serve concurrent requests. No lock is taken on the target:
    two writers racing on the same path may both pass the existence check.
    """

    def __init__(self, directory: str, overwrite: bool = True) -> None:
        self.directory = directory
        self.overwrite = overwrite

    def target_for(self, relative_path: str) -> str:
        return resolve_target(self.directory, relative_path)

    def run(
        self,
        target: str,
        materialize: Materializer,
        *,
        path: Optional[str] = None,
        overwrite: Optional[bool] = None,
    ) -> StagingOutcome:
        allow_overwrite = self.overwrite if overwrite is None else overwrite
        state = StageState.IDLE
        try:
            state = self._transition(state, StageState.CHECKING_EXISTS, target)
            self._check_exists(target, allow_overwrite)

            state = self._transition(state, StageState.CREATING_DIRECTORY, target)
            self._create_directory(os.path.dirname(target))

            state = self._transition(state, StageState.MATERIALIZING, target)
            self._materialize(target, materialize)

            state = self._transition(state, StageState.SETTING_PERMISSIONS, target)
            self._set_permissions(target)
        except StagingError as error:
            self._transition(state, StageState.FAILED, target)
            logger.warning(
                "staging_failed stage=%s target=%s error=%s message=%s",
                state.value,
                target,
                error.error,
                error.message,
            )
            return Failed.from_error(error)

        self._transition(state, StageState.COMMITTED, target)
        return Committed(
            path=path if path is not None else target,
            location=os.path.abspath(target),
            size=self._file_size(target),
        )

    @staticmethod
    def _transition(current: StageState, new: StageState, target: str) -> StageState:
        logger.debug("stage_transition from=%s to=%s target=%s", current.value, new.value, target)
        return new

    @staticmethod
    def _check_exists(target: str, allow_overwrite: bool) -> None:
        if os.path.isfile(target) and not allow_overwrite:
            raise StagingError(
                ErrorKind.CONFLICT,
                "file exists",
                "The file you are trying to upload already exists and cannot be overwritten.",
            )

    @staticmethod
    def _create_directory(directory: str) -> None:
        if not directory:
            return
        try:
            os.makedirs(directory, mode=DIRECTORY_MODE, exist_ok=True)
        except OSError as error:
            raise StagingError(ErrorKind.IO, "error creating directory", str(error)) from error

    def _materialize(self, target: str, materialize: Materializer) -> None:
        if os.path.isdir(target):
            # moving or streaming onto a directory would write inside it
            raise StagingError(ErrorKind.IO, materialize.error_code, f"Is a directory: '{target}'")
        try:
            materialize(target)
        except StagingError as error:
            failure = error
        except OSError as error:
            failure = StagingError(ErrorKind.IO, materialize.error_code, str(error))
            failure.__cause__ = error
        else:
            return

        if materialize.cleanup_on_failure:
            self._transition(StageState.MATERIALIZING, StageState.ROLLING_BACK, target)
            self._roll_back(target)
        raise failure

    @staticmethod
    def _roll_back(target: str) -> None:
        try:
            os.remove(target)
        except FileNotFoundError:
            return
        except OSError as error:
            logger.error("rollback_failed target=%s error=%s", target, error)
            return
        logger.info("rollback_removed target=%s", target)

    @staticmethod
    def _set_permissions(target: str) -> None:
        try:
            os.chmod(target, FILE_MODE)
        except OSError as error:
            raise StagingError(
                ErrorKind.IO, "error changing file permissions", str(error)
            ) from error

    @staticmethod
    def _file_size(target: str) -> int:
        try:
            return os.stat(target).st_size
        except OSError as error:
            logger.error("stat_failed target=%s error=%s", target, error)
            return -1
