"""
Rule-set compilation for split tunneling.

Downloads a line-based domain list (`full:` exact, `regexp:` pattern, anything
else a suffix), writes it as a sing-box source rule-set and compiles it with
`sing-box rule-set compile`. The previous binary is copied to a .bak file first
and restored when compilation fails or the build is cancelled, so the engine
always finds the last good rule-set.
"""

import asyncio
import json
import logging
import os
import shutil
import signal
from dataclasses import dataclass, field
from pathlib import Path

import httpx

from .errors import CompileError, FetchError, OperationInProgressError, ValidationError
from .fsutil import atomic_write, file_stat

logger = logging.getLogger(__name__)

RULE_SET_VERSION = 3


@dataclass
class DomainClassification:
    exact: list[str] = field(default_factory=list)
    suffix: list[str] = field(default_factory=list)
    regex: list[str] = field(default_factory=list)

    def to_source(self) -> dict:
        """The source (JSON) rule-set document the compiler reads."""
        return {
            "version": RULE_SET_VERSION,
            "rules": [
                {
                    "domain": self.exact,
                    "domain_suffix": self.suffix,
                    "domain_regex": self.regex,
                }
            ],
        }

    def counts(self) -> dict:
        return {
            "domain": len(self.exact),
            "domain_suffix": len(self.suffix),
            "domain_regex": len(self.regex),
        }


def classify(text: str) -> DomainClassification:
    """Sort domain list lines into exact, suffix and regex buckets.

    Blank lines and `#` comments are ignored.
    """
    result = DomainClassification()
    for raw in text.splitlines():
        line = raw.strip()
        if not line or line.startswith("#"):
            continue
        if line.startswith("full:"):
            result.exact.append(line[len("full:"):])
        elif line.startswith("regexp:"):
            result.regex.append(line[len("regexp:"):])
        else:
            result.suffix.append(line)
    return result


class RuleSetBuilder:
    """Builds <home>/chinasite.srs from a remote domain list."""

    def __init__(
        self,
        home: Path,
        source_url: str | None,
        binary: str = "sing-box",
        artifact_name: str = "chinasite.srs",
        compile_timeout: float = 60.0,
        fetch_timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport = None,
    ):
        self.home = Path(home)
        self.source_url = source_url
        self.binary = binary
        self.compile_timeout = compile_timeout
        self.fetch_timeout = fetch_timeout
        self._transport = transport
        self._lock = asyncio.Lock()

        self.list_path = self.home / "direct.txt"
        self.source_path = self.home / "direct.json"
        self.artifact_path = self.home / artifact_name
        self.backup_path = self.home / f"{artifact_name}.bak"

    @property
    def busy(self) -> bool:
        return self._lock.locked()

    async def build(self) -> dict:
        """Fetch, classify and compile. Returns artifact metadata and rule counts.

        Raises OperationInProgressError if a build is already running, FetchError
        if the list cannot be downloaded (nothing on disk is touched), and
        CompileError after restoring the previous artifact. A cancelled build
        kills the compiler and restores the previous artifact as well.
        """
        if self._lock.locked():
            raise OperationInProgressError("a rule-set build is already in progress")

        async with self._lock:
            if not self.source_url:
                raise ValidationError("rules.direct_txt is not configured")

            text = await self._download()
            classification = classify(text)
            logger.info(f"Classified domain list: {classification.counts()}")

            atomic_write(self.list_path, text)
            atomic_write(self.source_path, json.dumps(classification.to_source()))

            backed_up = self._backup()
            try:
                await self._compile()
            except BaseException:
                # Compile failure, timeout or cancellation
                self._rollback(backed_up)
                raise

            result = file_stat(self.artifact_path)
            result.update(classification.counts())
            result["path"] = str(self.artifact_path)
            logger.info(f"Compiled rule-set {self.artifact_path} ({result['size']} bytes)")
            return result

    async def _download(self) -> str:
        url = self.source_url
        try:
            async with httpx.AsyncClient(
                timeout=self.fetch_timeout,
                follow_redirects=True,
                transport=self._transport,
            ) as client:
                response = await client.get(url)
                response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise FetchError(url, f"HTTP {e.response.status_code}", e)
        except httpx.HTTPError as e:
            raise FetchError(url, f"{type(e).__name__}: {e}", e)
        return response.text

    def _backup(self) -> bool:
        """Copy the current artifact to the .bak path. Returns whether one existed."""
        if not self.artifact_path.exists():
            return False
        shutil.copy2(self.artifact_path, self.backup_path)
        logger.debug(f"Backed up {self.artifact_path} to {self.backup_path}")
        return True

    def _rollback(self, backed_up: bool):
        """Put the pre-build artifact back in place."""
        if self.artifact_path.exists():
            self.artifact_path.unlink()
        if backed_up:
            shutil.copy2(self.backup_path, self.artifact_path)
            logger.warning(f"Restored {self.artifact_path} from {self.backup_path}")

    async def _kill_compiler(self, proc: asyncio.subprocess.Process):
        """SIGKILL the compiler's process group and reap it."""
        if proc.returncode is None:
            # Not yet reaped, so the group id (== pid) still belongs to it
            try:
                os.killpg(proc.pid, signal.SIGKILL)
            except ProcessLookupError:
                pass
            logger.warning(f"Killed rule-set compiler (PID {proc.pid})")
        await proc.wait()

    async def _compile(self):
        binary = Path(self.binary)
        if not binary.is_absolute():
            binary = self.home / binary
        args = [
            str(binary),
            "rule-set",
            "compile",
            "--output",
            str(self.artifact_path),
            str(self.source_path),
        ]
        env = os.environ.copy()
        env["PATH"] = f"{env.get('PATH', '')}{os.pathsep}{self.home}"

        try:
            proc = await asyncio.create_subprocess_exec(
                *args,
                cwd=str(self.home),
                env=env,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
                start_new_session=True,  # Create new process group
            )
        except OSError as e:
            raise CompileError(f"Failed to run rule-set compiler: {e}")

        try:
            output, _ = await asyncio.wait_for(proc.communicate(), timeout=self.compile_timeout)
        except asyncio.TimeoutError:
            await self._kill_compiler(proc)
            raise CompileError(
                f"rule-set compile timed out after {self.compile_timeout}s",
                returncode=proc.returncode,
            )
        except BaseException:
            # Cancelled: the compiler must not outlive the build
            await asyncio.shield(self._kill_compiler(proc))
            raise

        output = output.decode("utf-8", errors="replace") if output else ""
        if proc.returncode != 0:
            logger.error(f"rule-set compile failed with code {proc.returncode}: {output[-2000:]}")
            raise CompileError(
                f"Failed to compile rule set (exit code {proc.returncode})",
                returncode=proc.returncode,
                output=output[-2000:],
            )
