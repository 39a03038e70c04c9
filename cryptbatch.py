#!/usr/bin/env python3
"""
cryptbatch - batch file and folder encryption pipeline

Walks a directory tree, maps every file onto an output path that mirrors the
input layout, hands each file to a pluggable crypto engine and streams the
result to disk.

Pipeline Features:
- Output directory nested inside the input tree is pruned from the walk
- Per-file armored/binary detection for mixed .asc/.pgp/.gpg inputs
- Sequential back-pressured streaming writes, one chunk in memory at a time
- Run-wide overwrite/skip/abort policy for existing output files
- A failing file is recorded and the batch moves on to the next one
"""

import asyncio
import contextlib
import logging
import os
import signal
import sys
import tempfile
import time
import traceback
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import (
    Any,
    AsyncIterator,
    Awaitable,
    Callable,
    Dict,
    FrozenSet,
    Iterable,
    Iterator,
    List,
    Optional,
    Sequence,
    Tuple,
    Union,
)

try:
    from rich.console import Console
    from rich.progress import (
        Progress,
        SpinnerColumn,
        TextColumn,
        BarColumn,
        TimeElapsedColumn,
        MofNCompleteColumn,
    )

    HAS_RICH = True
except ImportError:
    HAS_RICH = False
    Console = None
    Progress = None

try:
    from tqdm import tqdm

    HAS_TQDM = True
except ImportError:
    HAS_TQDM = False
    tqdm = None


__version__ = "1.0.0"
__author__ = "cryptbatch Project"
__license__ = "MIT"


ARMORED_SUFFIX = ".asc"
BINARY_SUFFIX = ".pgp"
ARMORED_EXTENSIONS = frozenset({".asc"})
BINARY_EXTENSIONS = frozenset({".pgp", ".gpg"})
ENCRYPTED_SUFFIXES = (".pgp", ".gpg", ".asc")
DECRYPTED_MARKER = ".decrypted"

DEFAULT_BUFFER_SIZE = 64 * 1024
DEFAULT_FAILURE_PREVIEW = 5


async def run_in_thread(func: Callable[..., Any], *args, **kwargs) -> Any:
    """Run a blocking function in a thread pool for true async I/O."""
    return await asyncio.to_thread(func, *args, **kwargs)


class OutputFormat(str, Enum):
    """Encoding of an encrypted file on disk"""

    ARMORED = "armored"
    BINARY = "binary"


class FormatMode(str, Enum):
    """How the format of encrypted inputs is decided"""

    AUTO = "auto"
    ARMORED = "armored"
    BINARY = "binary"


class CollisionPolicy(str, Enum):
    """What to do when an output path already exists"""

    OVERWRITE = "overwrite"
    SKIP = "skip"
    ABORT = "abort"


class ArtifactKind(Enum):
    TEXT = "text"
    BYTES = "bytes"
    TEXT_STREAM = "text-stream"
    BYTE_STREAM = "byte-stream"


@dataclass(frozen=True)
class Artifact:
    """Output of a crypto transform: buffered text/bytes or a lazy chunk stream.

    Streams are async iterators and can be consumed exactly once.
    """

    kind: ArtifactKind
    payload: Any

    @classmethod
    def text(cls, value: str) -> "Artifact":
        return cls(ArtifactKind.TEXT, value)

    @classmethod
    def from_bytes(cls, value: bytes) -> "Artifact":
        return cls(ArtifactKind.BYTES, value)

    @classmethod
    def text_stream(cls, chunks: AsyncIterator[str]) -> "Artifact":
        return cls(ArtifactKind.TEXT_STREAM, chunks)

    @classmethod
    def byte_stream(cls, chunks: AsyncIterator[bytes]) -> "Artifact":
        return cls(ArtifactKind.BYTE_STREAM, chunks)

    @property
    def is_stream(self) -> bool:
        return self.kind in (ArtifactKind.TEXT_STREAM, ArtifactKind.BYTE_STREAM)


@dataclass
class TransformResult:
    """What a batch transform hands back for one file.

    For streamed decryptions ``verified`` is only known once the artifact
    has been fully consumed.
    """

    artifact: Artifact
    verified: Optional[bool] = None
    filename: Optional[str] = None


@dataclass(frozen=True)
class FileTask:
    """One unit of batch work"""

    input_path: Path
    relative_path: Path
    output_path: Path
    format: OutputFormat


@dataclass
class FailureRecord:
    path: str
    error: str


@dataclass
class BatchResult:
    """Aggregate outcome of one batch run"""

    processed_count: int = 0
    skipped_count: int = 0
    failures: List[FailureRecord] = field(default_factory=list)
    signature_failures: List[str] = field(default_factory=list)
    bytes_written: int = 0
    aborted: bool = False
    aborted_path: Optional[Path] = None

    @property
    def failed_count(self) -> int:
        return len(self.failures)

    @property
    def visited(self) -> int:
        return self.processed_count + self.skipped_count + self.failed_count

    @property
    def ok(self) -> bool:
        return not self.aborted and not self.failures

    def summary_lines(
        self, preview: int = DEFAULT_FAILURE_PREVIEW, verb: str = "Processed"
    ) -> List[str]:
        """Human-readable summary with at most ``preview`` entries per list"""
        lines = [f"{verb} files: {self.processed_count}"]
        if self.skipped_count:
            lines.append(f"Skipped files: {self.skipped_count}")
        if self.signature_failures:
            lines.append(f"Signature failures: {len(self.signature_failures)}")
            for path in self.signature_failures[:preview]:
                lines.append(f"  Signature failed: {path}")
            if len(self.signature_failures) > preview:
                lines.append(f"  ... and {len(self.signature_failures) - preview} more")
        if self.failures:
            lines.append(f"Failed files: {self.failed_count}")
            for failure in self.failures[:preview]:
                lines.append(f"  {failure.path}: {failure.error}")
            if self.failed_count > preview:
                lines.append(f"  ... and {self.failed_count - preview} more")
        if self.aborted:
            lines.append(f"Batch aborted: output file exists: {self.aborted_path}")
        return lines


Transform = Callable[[FileTask], Awaitable[TransformResult]]


class CryptBatchError(Exception):
    """Base exception for cryptbatch errors"""

    pass


class ConfigurationError(CryptBatchError):
    """Invalid run setup, detected before any file is processed"""

    pass


class RootNotDirectoryError(ConfigurationError):
    pass


class WalkError(ConfigurationError):
    """A directory in the input tree could not be listed"""

    pass


class NoFilesError(ConfigurationError):
    pass


class ArtifactError(CryptBatchError):
    """Artifact shape cannot be written to the requested output"""

    pass


class BatchAborted(Exception):
    """Control signal raised when the ABORT collision policy fires"""

    def __init__(self, path: Path):
        self.path = path
        super().__init__(f"Output file exists; aborting batch: {path}")


def resolve_path(raw: Union[str, Path]) -> Path:
    """Turn a user-supplied path into an absolute, normalized path.

    ``~`` and ``~/...`` expand to the home directory; everything else is taken
    relative to the current working directory. Symlinks are left alone and
    nothing is checked for existence.
    """
    text = str(raw).strip()
    if text == "~":
        return Path.home()
    if text.startswith("~/") or text.startswith("~" + os.sep):
        return Path(os.path.normpath(Path.home() / text[2:]))
    return Path(os.path.normpath(Path.cwd() / text))


def resolve_format(path: Union[str, Path], mode: Union[FormatMode, str]) -> OutputFormat:
    """Decide whether an encrypted input is armored text or raw binary"""
    mode = FormatMode(mode)
    if mode is FormatMode.ARMORED:
        return OutputFormat.ARMORED
    if mode is FormatMode.BINARY:
        return OutputFormat.BINARY

    suffix = Path(path).suffix.lower()
    if suffix in ARMORED_EXTENSIONS:
        return OutputFormat.ARMORED
    # Unknown extensions are treated as binary containers
    return OutputFormat.BINARY


def parse_extension_filter(text: str, defaults: Iterable[str]) -> FrozenSet[str]:
    """Parse ``" .PDF, txt "`` style input into ``{".pdf", ".txt"}``.

    Returns ``defaults`` when nothing usable was given.
    """
    tokens = [token.strip().lower() for token in (text or "").split(",")]
    tokens = [token for token in tokens if token]
    if not tokens:
        return frozenset(defaults)
    return frozenset(token if token.startswith(".") else f".{token}" for token in tokens)


def matches_extension_filter(path: Union[str, Path], extensions: FrozenSet[str]) -> bool:
    if not extensions:
        return True
    return Path(path).suffix.lower() in extensions


def default_decrypt_filter(mode: Union[FormatMode, str]) -> FrozenSet[str]:
    mode = FormatMode(mode)
    if mode is FormatMode.ARMORED:
        return ARMORED_EXTENSIONS
    if mode is FormatMode.BINARY:
        return BINARY_EXTENSIONS
    return ARMORED_EXTENSIONS | BINARY_EXTENSIONS


def _is_excluded(canonical: str, excluded: Optional[str]) -> bool:
    if excluded is None:
        return False
    return canonical == excluded or canonical.startswith(excluded.rstrip(os.sep) + os.sep)


def _walk_directory(directory: Path, excluded: Optional[str]) -> Tuple[Path, ...]:
    try:
        with os.scandir(directory) as it:
            entries = sorted(it, key=lambda entry: entry.name)
    except OSError as e:
        raise WalkError(f"Cannot scan directory {directory}: {e}") from e

    files: List[Path] = []
    for entry in entries:
        if _is_excluded(os.path.realpath(entry.path), excluded):
            continue
        try:
            if entry.is_dir(follow_symlinks=False):
                files.extend(_walk_directory(Path(entry.path), excluded))
            elif entry.is_file(follow_symlinks=False):
                files.append(Path(entry.path))
            # symlinks, sockets, devices and fifos are skipped
        except OSError as e:
            raise WalkError(f"Cannot access {entry.path}: {e}") from e

    return tuple(files)


def walk_files(
    root: Union[str, Path], exclude: Optional[Union[str, Path]] = None
) -> Tuple[Path, ...]:
    """Recursively list regular files under ``root``, depth-first.

    Siblings are visited in name order so the same tree always gives the same
    sequence. ``exclude`` and everything under it is pruned, which keeps an
    output directory placed inside the input tree from being walked again.
    The walk is all-or-nothing: any unreadable directory raises ``WalkError``.
    """
    root_path = Path(root)
    if not root_path.is_dir():
        raise RootNotDirectoryError(f"Folder not found or not a directory: {root_path}")

    excluded = os.path.realpath(exclude) if exclude is not None else None
    if _is_excluded(os.path.realpath(root_path), excluded):
        return ()
    return _walk_directory(root_path, excluded)


def output_suffix(fmt: Union[OutputFormat, str]) -> str:
    return ARMORED_SUFFIX if OutputFormat(fmt) is OutputFormat.ARMORED else BINARY_SUFFIX


def map_encrypt(
    input_root: Path, output_root: Path, input_path: Path, suffix: str
) -> Path:
    """``<output_root>/<relative path><suffix>``"""
    relative = Path(input_path).relative_to(input_root)
    return Path(output_root) / relative.parent / f"{relative.name}{suffix}"


def strip_encrypted_suffix(name: str) -> str:
    """Drop a trailing .pgp/.gpg/.asc, or add .decrypted when there is none.

    The marker keeps an unrecognized file from landing on top of an unrelated
    file with the same name.
    """
    lowered = name.lower()
    for suffix in ENCRYPTED_SUFFIXES:
        if lowered.endswith(suffix) and len(name) > len(suffix):
            return name[: -len(suffix)]
    return f"{name}{DECRYPTED_MARKER}"


def map_decrypt(input_root: Path, output_root: Path, input_path: Path) -> Path:
    relative = Path(input_path).relative_to(input_root)
    return Path(output_root) / relative.parent / strip_encrypted_suffix(relative.name)


def suggest_single_output(input_path: Union[str, Path]) -> Path:
    """Default output path for decrypting one file outside a batch"""
    path = Path(input_path)
    return path.with_name(strip_encrypted_suffix(path.name))


async def read_file_stream(
    path: Union[str, Path], chunk_size: int = DEFAULT_BUFFER_SIZE
) -> AsyncIterator[bytes]:
    """Yield a file's content chunk by chunk, reading in a worker thread"""
    f = await run_in_thread(open, path, "rb")
    try:
        while True:
            chunk = await run_in_thread(f.read, chunk_size)
            if not chunk:
                break
            yield chunk
    finally:
        f.close()


def format_size(size: float) -> str:
    """Format size in human-readable format"""
    if size < 0:
        return "0B"

    for unit in ["B", "KB", "MB", "GB", "TB"]:
        if size < 1024.0:
            return f"{size:.1f}{unit}"
        size /= 1024.0
    return f"{size:.1f}PB"


async def _aclose(source: Any) -> None:
    aclose = getattr(source, "aclose", None)
    if aclose is not None:
        await aclose()


class FolderCrypter:
    """Batch encrypt/decrypt driver for single files and directory trees.

    The crypto engine is injected; it needs two coroutine methods:

    - ``encrypt(input_stream, recipients, *, output_format, signing_key, filename) -> Artifact``
    - ``decrypt(input_stream, key, *, input_format, verification_keys) -> TransformResult``
    """

    def __init__(self, config: Optional[Dict] = None, engine: Any = None):
        self.config = config or {}

        # Initialize temporary files list first (needed for cleanup in case of early errors)
        self._temp_files: List[Path] = []

        self.console = Console() if HAS_RICH else None

        self.logger = self._setup_logging()
        self.engine = engine

        buffer_size = self.config.get("buffer_size", DEFAULT_BUFFER_SIZE)
        if not isinstance(buffer_size, int) or buffer_size <= 0:
            buffer_size = DEFAULT_BUFFER_SIZE
        self.buffer_size = buffer_size
        failure_preview = self.config.get("failure_preview", DEFAULT_FAILURE_PREVIEW)
        if not isinstance(failure_preview, int) or failure_preview <= 0:
            failure_preview = DEFAULT_FAILURE_PREVIEW
        self.failure_preview = failure_preview

        self.dry_run = self.config.get("dry_run", False)
        self.verbose = self.config.get("verbose", False)

        # TTY detection for progress bars (disable in non-interactive terminals like CI/CD)
        self.is_tty = sys.stdout.isatty()

    def _setup_logging(self) -> logging.Logger:
        """Setup structured logging"""
        level = logging.DEBUG if self.config.get("verbose") else logging.INFO

        logger = logging.getLogger("cryptbatch")
        logger.setLevel(level)

        # Avoid duplicate handlers
        if not logger.handlers:
            handler = logging.StreamHandler()
            formatter = logging.Formatter(
                "%(asctime)s - %(levelname)s - %(message)s", datefmt="%Y-%m-%d %H:%M:%S"
            )
            handler.setFormatter(formatter)
            logger.addHandler(handler)

        return logger

    def install_signal_handlers(self):
        """Remove in-flight partial files when the process is interrupted"""
        def signal_handler(signum, frame):
            self.logger.warning("Received interrupt signal, cleaning up...")
            self._cleanup_temp_files()
            sys.exit(130)  # 128 + SIGINT (2)

        try:
            signal.signal(signal.SIGINT, signal_handler)
            signal.signal(signal.SIGTERM, signal_handler)
        except (ValueError, OSError):
            # Signal handling may not be available in all contexts (e.g., threads)
            pass

    def _require_engine(self) -> Any:
        if self.engine is None:
            raise ConfigurationError("No crypto engine configured")
        return self.engine

    # ------------------------------------------------------------------
    # Stream sink
    # ------------------------------------------------------------------

    def _open_temp_file(self, output_path: Path):
        temp_file = tempfile.NamedTemporaryFile(
            mode="wb",
            prefix=f".{output_path.name}.",
            suffix=".part",
            dir=output_path.parent,
            delete=False,
        )
        temp_path = Path(temp_file.name)
        self._temp_files.append(temp_path)
        return temp_path, temp_file

    def _discard_temp_file(self, temp_path: Optional[Path]):
        if temp_path is None:
            return
        try:
            temp_path.unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            self.logger.warning(f"Cannot remove partial file {temp_path}: {e}")
        if temp_path in self._temp_files:
            self._temp_files.remove(temp_path)

    @staticmethod
    def _write_chunk(handle, data: bytes) -> int:
        # Flush so the chunk has left our buffers before the next one is pulled
        handle.write(data)
        handle.flush()
        return len(data)

    async def _drain_stream(self, source: AsyncIterator, handle, encode: bool) -> int:
        written = 0
        async for chunk in source:
            if encode:
                if not isinstance(chunk, str):
                    raise ArtifactError(f"Text stream produced {type(chunk).__name__}")
                data = chunk.encode("utf-8")
            else:
                if isinstance(chunk, str):
                    raise ArtifactError("Byte stream produced text")
                data = bytes(chunk)
            if not data:
                continue
            written += await run_in_thread(self._write_chunk, handle, data)
        return written

    async def write_artifact(
        self,
        artifact: Artifact,
        output_path: Union[str, Path],
        fmt: Union[OutputFormat, str],
    ) -> int:
        """Persist an artifact at ``output_path`` and return the bytes written.

        Content goes to a ``.part`` file beside the target which replaces the
        target only after everything was written and closed. Streams are pulled
        one chunk at a time and each chunk is written and flushed before the
        next is requested. The source stream and the file handle are released
        on every path; a failure leaves no partial output behind.
        """
        output_path = Path(output_path)
        fmt = OutputFormat(fmt)
        source = artifact.payload if artifact.is_stream else None
        temp_path = None
        handle = None

        try:
            if artifact.kind is ArtifactKind.TEXT_STREAM and fmt is OutputFormat.BINARY:
                raise ArtifactError("Text stream cannot be written as binary output")

            await run_in_thread(output_path.parent.mkdir, parents=True, exist_ok=True)
            temp_path, handle = await run_in_thread(self._open_temp_file, output_path)

            if artifact.kind is ArtifactKind.TEXT:
                written = await run_in_thread(
                    self._write_chunk, handle, artifact.payload.encode("utf-8")
                )
            elif artifact.kind is ArtifactKind.BYTES:
                written = await run_in_thread(
                    self._write_chunk, handle, bytes(artifact.payload)
                )
            elif artifact.kind is ArtifactKind.TEXT_STREAM:
                written = await self._drain_stream(source, handle, encode=True)
            elif artifact.kind is ArtifactKind.BYTE_STREAM:
                written = await self._drain_stream(source, handle, encode=False)
            else:
                raise ArtifactError(f"Unsupported artifact kind: {artifact.kind}")
        except BaseException:
            await self._release_quietly(source, handle)
            self._discard_temp_file(temp_path)
            raise

        try:
            await _aclose(source)
            await run_in_thread(handle.close)
            await run_in_thread(os.replace, temp_path, output_path)
        except BaseException:
            # Output that could not be finalized is not trusted
            await self._release_quietly(None, handle)
            self._discard_temp_file(temp_path)
            raise

        self._temp_files.remove(temp_path)
        if self.verbose:
            self.logger.debug(f"Wrote {output_path} ({format_size(written)})")
        return written

    async def _release_quietly(self, source: Any, handle: Any):
        try:
            await _aclose(source)
        except Exception as e:
            self.logger.debug(f"Error closing artifact stream: {e}")
        if handle is not None:
            try:
                handle.close()
            except OSError as e:
                self.logger.debug(f"Error closing output file: {e}")

    # ------------------------------------------------------------------
    # Batch coordinator
    # ------------------------------------------------------------------

    @contextlib.contextmanager
    def _progress(self, total: int, description: str, enabled: bool) -> Iterator[Callable[[], None]]:
        # Disable rich/tqdm progress bars in non-TTY environments (CI/CD)
        use_rich_progress = enabled and HAS_RICH and self.console and self.is_tty
        use_tqdm_progress = enabled and HAS_TQDM and tqdm and self.is_tty and not use_rich_progress

        if use_rich_progress:
            with Progress(
                SpinnerColumn(),
                TextColumn("[progress.description]{task.description}"),
                BarColumn(),
                MofNCompleteColumn(),
                TimeElapsedColumn(),
                console=self.console,
            ) as progress_bar:
                task_id = progress_bar.add_task(description, total=total)
                yield lambda: progress_bar.update(task_id, advance=1)
        elif use_tqdm_progress:
            pbar = tqdm(total=total, desc=description, unit="files")
            try:
                yield lambda: pbar.update(1)
            finally:
                pbar.close()
        elif enabled and self.is_tty:
            done = [0]

            def advance():
                done[0] += 1
                if done[0] % 50 == 0 or done[0] == total:
                    print(f"{description}: {done[0]}/{total}", end="\r")

            yield advance
            print()
        else:
            yield lambda: None

    async def _process_task(
        self,
        task: FileTask,
        collision_policy: CollisionPolicy,
        transform: Transform,
        result: BatchResult,
    ):
        await run_in_thread(task.output_path.parent.mkdir, parents=True, exist_ok=True)

        if await run_in_thread(task.output_path.exists):
            if collision_policy is CollisionPolicy.SKIP:
                if self.verbose:
                    self.logger.debug(f"Skipping {task.relative_path}: output exists")
                result.skipped_count += 1
                return
            if collision_policy is CollisionPolicy.ABORT:
                raise BatchAborted(task.output_path)
            if self.verbose:
                self.logger.debug(f"Overwriting {task.output_path}")

        outcome = await transform(task)
        written = await self.write_artifact(outcome.artifact, task.output_path, task.format)

        result.processed_count += 1
        result.bytes_written += written
        # Only known after the stream was drained by write_artifact
        if outcome.verified is False:
            result.signature_failures.append(str(task.input_path))

    async def run_batch(
        self,
        tasks: Sequence[FileTask],
        collision_policy: Union[CollisionPolicy, str],
        transform: Transform,
        progress: bool = False,
    ) -> BatchResult:
        """Run ``transform`` over every task, strictly one after another.

        Per-file errors are recorded in the result and never raised. The ABORT
        collision policy stops the loop and returns what was done so far with
        ``aborted`` set.
        """
        collision_policy = CollisionPolicy(collision_policy)
        result = BatchResult()

        with self._progress(len(tasks), "Processing files", progress) as advance:
            for task in tasks:
                try:
                    await self._process_task(task, collision_policy, transform, result)
                except BatchAborted as e:
                    result.aborted = True
                    result.aborted_path = e.path
                    self.logger.warning(str(e))
                    break
                except Exception as e:
                    message = str(e) or type(e).__name__
                    result.failures.append(FailureRecord(path=str(task.input_path), error=message))
                    self.logger.error(f"Error processing {task.input_path}: {message}")
                    if self.verbose:
                        self.logger.debug(traceback.format_exc())
                finally:
                    advance()

        return result

    # ------------------------------------------------------------------
    # Task building
    # ------------------------------------------------------------------

    def _warn_duplicate_outputs(self, tasks: Sequence[FileTask]):
        seen: Dict[Path, Path] = {}
        for task in tasks:
            previous = seen.setdefault(task.output_path, task.input_path)
            if previous != task.input_path:
                self.logger.warning(
                    f"{task.input_path} and {previous} both map to {task.output_path}"
                )

    def build_encrypt_tasks(
        self,
        input_root: Path,
        output_root: Path,
        files: Iterable[Path],
        output_format: Union[OutputFormat, str],
    ) -> List[FileTask]:
        fmt = OutputFormat(output_format)
        suffix = output_suffix(fmt)
        tasks = [
            FileTask(
                input_path=file_path,
                relative_path=file_path.relative_to(input_root),
                output_path=map_encrypt(input_root, output_root, file_path, suffix),
                format=fmt,
            )
            for file_path in files
        ]
        self._warn_duplicate_outputs(tasks)
        return tasks

    def build_decrypt_tasks(
        self,
        input_root: Path,
        output_root: Path,
        files: Iterable[Path],
        input_format: Union[FormatMode, str] = FormatMode.AUTO,
    ) -> List[FileTask]:
        mode = FormatMode(input_format)
        tasks = [
            FileTask(
                input_path=file_path,
                relative_path=file_path.relative_to(input_root),
                output_path=map_decrypt(input_root, output_root, file_path),
                format=resolve_format(file_path, mode),
            )
            for file_path in files
        ]
        self._warn_duplicate_outputs(tasks)
        return tasks

    def _collect_files(
        self, input_root: Path, output_root: Path, extensions: FrozenSet[str]
    ) -> List[Path]:
        self.logger.info(f"Scanning source directory: {input_root}")
        files = []
        for file_path in walk_files(input_root, exclude=output_root):
            if matches_extension_filter(file_path, extensions):
                files.append(file_path)
            elif self.verbose:
                self.logger.debug(f"Excluding {file_path}: extension not in filter")

        if not files:
            raise NoFilesError("No files matched your filter.")
        return files

    def _dry_run(self, tasks: Sequence[FileTask]) -> BatchResult:
        """Print the planned input -> output mapping without writing anything"""
        self.logger.info("DRY RUN - Files that would be processed:")
        existing = 0
        for task in tasks:
            exists = task.output_path.exists()
            existing += exists
            marker = " (exists)" if exists else ""
            if HAS_RICH and self.console:
                self.console.print(
                    f"  [green]✓[/green] {task.relative_path} -> [blue]{task.output_path}[/blue]"
                    f"[yellow]{marker}[/yellow]"
                )
            else:
                print(f"  ✓ {task.relative_path} -> {task.output_path}{marker}")

        print(f"\nWould process: {len(tasks)} files ({existing} outputs already exist)")
        return BatchResult()

    def _log_summary(self, result: BatchResult, verb: str, elapsed: float):
        self.logger.info(f"{verb} {result.processed_count} files")
        self.logger.info(f"Total written: {format_size(result.bytes_written)}")
        self.logger.info(
            f"Skipped: {result.skipped_count}, Errors: {result.failed_count}"
        )
        self.logger.info(f"Processing time: {elapsed:.2f}s")

    # ------------------------------------------------------------------
    # Folder and file operations
    # ------------------------------------------------------------------

    async def encrypt_folder(
        self,
        input_dir: Union[str, Path],
        output_dir: Optional[Union[str, Path]] = None,
        recipients: Sequence[str] = (),
        output_format: Union[OutputFormat, str] = OutputFormat.ARMORED,
        extensions: Optional[Iterable[str]] = None,
        collision_policy: Union[CollisionPolicy, str] = CollisionPolicy.SKIP,
        signing_key: Any = None,
        progress: bool = True,
    ) -> BatchResult:
        """Encrypt every file under ``input_dir`` into a mirrored output tree.

        ``recipients`` are public keys in the engine's format; ``signing_key``
        is an already unlocked key shared by every file of the run.
        """
        engine = self._require_engine()
        input_root = resolve_path(input_dir)
        if not input_root.is_dir():
            raise RootNotDirectoryError(f"Folder not found or not a directory: {input_root}")
        output_root = (
            resolve_path(output_dir) if output_dir else Path(f"{input_root}-encrypted")
        )
        if not recipients:
            raise ConfigurationError("At least one recipient is required")

        fmt = OutputFormat(output_format)
        files = self._collect_files(input_root, output_root, frozenset(extensions or ()))
        tasks = self.build_encrypt_tasks(input_root, output_root, files, fmt)

        if self.dry_run:
            return self._dry_run(tasks)

        async def transform(task: FileTask) -> TransformResult:
            artifact = await engine.encrypt(
                read_file_stream(task.input_path, self.buffer_size),
                list(recipients),
                output_format=task.format,
                signing_key=signing_key,
                filename=task.input_path.name,
            )
            return TransformResult(artifact=artifact)

        start_time = time.time()
        self.logger.info(f"Encrypting {len(tasks)} files into {output_root}")
        result = await self.run_batch(tasks, collision_policy, transform, progress=progress)
        self._log_summary(result, "Encrypted", time.time() - start_time)
        return result

    async def decrypt_folder(
        self,
        input_dir: Union[str, Path],
        output_dir: Optional[Union[str, Path]] = None,
        key: Any = None,
        input_format: Union[FormatMode, str] = FormatMode.AUTO,
        extensions: Optional[Iterable[str]] = None,
        collision_policy: Union[CollisionPolicy, str] = CollisionPolicy.SKIP,
        verification_keys: Optional[Sequence[str]] = None,
        progress: bool = True,
    ) -> BatchResult:
        """Decrypt every matching file under ``input_dir``.

        Mixed armored/binary inputs are told apart per file when
        ``input_format`` is auto. Signatures are checked against
        ``verification_keys`` when given; files that decrypt but fail the
        check are listed in ``signature_failures``.
        """
        engine = self._require_engine()
        input_root = resolve_path(input_dir)
        if not input_root.is_dir():
            raise RootNotDirectoryError(f"Folder not found or not a directory: {input_root}")
        output_root = (
            resolve_path(output_dir) if output_dir else Path(f"{input_root}-decrypted")
        )

        mode = FormatMode(input_format)
        extension_filter = frozenset(extensions) if extensions else default_decrypt_filter(mode)
        files = self._collect_files(input_root, output_root, extension_filter)
        tasks = self.build_decrypt_tasks(input_root, output_root, files, mode)

        if self.dry_run:
            return self._dry_run(tasks)
        if key is None:
            raise ConfigurationError("A private key is required for decryption")

        async def transform(task: FileTask) -> TransformResult:
            return await engine.decrypt(
                read_file_stream(task.input_path, self.buffer_size),
                key,
                input_format=task.format,
                verification_keys=verification_keys,
            )

        start_time = time.time()
        self.logger.info(f"Decrypting {len(tasks)} files into {output_root}")
        result = await self.run_batch(tasks, collision_policy, transform, progress=progress)
        self._log_summary(result, "Decrypted", time.time() - start_time)
        return result

    def _check_single_target(self, input_path: Path, output_path: Path, force: bool):
        if not input_path.is_file():
            raise ConfigurationError(f"File not found: {input_path}")
        if output_path.exists() and not force:
            raise ConfigurationError(
                f"Output file already exists: {output_path} (use --force to overwrite)"
            )

    async def encrypt_file(
        self,
        input_path: Union[str, Path],
        output_path: Optional[Union[str, Path]] = None,
        recipients: Sequence[str] = (),
        output_format: Union[OutputFormat, str] = OutputFormat.ARMORED,
        signing_key: Any = None,
        force: bool = False,
    ) -> Path:
        engine = self._require_engine()
        fmt = OutputFormat(output_format)
        source = resolve_path(input_path)
        target = (
            resolve_path(output_path)
            if output_path
            else source.with_name(f"{source.name}{output_suffix(fmt)}")
        )
        self._check_single_target(source, target, force)
        if not recipients:
            raise ConfigurationError("At least one recipient is required")

        artifact = await engine.encrypt(
            read_file_stream(source, self.buffer_size),
            list(recipients),
            output_format=fmt,
            signing_key=signing_key,
            filename=source.name,
        )
        written = await self.write_artifact(artifact, target, fmt)
        self.logger.info(f"Encrypted file saved to {target} ({format_size(written)})")
        return target

    async def decrypt_file(
        self,
        input_path: Union[str, Path],
        output_path: Optional[Union[str, Path]] = None,
        key: Any = None,
        input_format: Union[FormatMode, str] = FormatMode.AUTO,
        verification_keys: Optional[Sequence[str]] = None,
        force: bool = False,
    ) -> Tuple[Path, TransformResult]:
        """Decrypt one file; the returned result carries the signature status"""
        engine = self._require_engine()
        if key is None:
            raise ConfigurationError("A private key is required for decryption")
        source = resolve_path(input_path)
        target = resolve_path(output_path) if output_path else suggest_single_output(source)
        self._check_single_target(source, target, force)

        fmt = resolve_format(source, input_format)
        outcome = await engine.decrypt(
            read_file_stream(source, self.buffer_size),
            key,
            input_format=fmt,
            verification_keys=verification_keys,
        )
        written = await self.write_artifact(outcome.artifact, target, fmt)
        self.logger.info(f"Decrypted file saved to {target} ({format_size(written)})")
        return target, outcome

    def _cleanup_temp_files(self):
        """Clean up any partial output files"""
        for temp_path in self._temp_files[:]:
            try:
                if temp_path.exists():
                    temp_path.unlink()
                self._temp_files.remove(temp_path)
            except (OSError, PermissionError):
                pass

    def __del__(self):
        """Destructor to ensure cleanup"""
        if hasattr(self, "_temp_files"):
            self._cleanup_temp_files()
