"""
External tool invocation service.

Runs the Android build tools that align, sign and verify an APK.

Design guarantees:
- Commands are argument vectors executed without a shell
- Credentials never appear on a command line; passwords are handed to
  apksigner through the child environment (``env:`` password sources)
- Every invocation is bounded by a timeout
- Blocking subprocess calls run on a dedicated worker pool, never on
  the event loop or the request-handling threads

Each call returns a ToolResult. Whether a failed result is fatal is
the pipeline's decision, not this module's.
"""

from __future__ import annotations

import asyncio
import functools
import logging
import os
import subprocess
import time
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Dict, List, Optional

from resigner.app.core.config import Settings
from resigner.app.schemas.credentials import SigningCredential
from resigner.app.schemas.tools import ToolResult

logger = logging.getLogger("resigner.tools")

KEYSTORE_PASS_ENV = "RESIGNER_KS_PASS"
KEY_PASS_ENV = "RESIGNER_KEY_PASS"


def _flag(enabled: bool) -> str:
    return "true" if enabled else "false"


class ToolInvoker:
    """
    Async facade over zipalign and apksigner.

    The worker pool is owned by the invoker and released by close().
    """

    def __init__(
        self,
        settings: Settings,
        executor: Optional[ThreadPoolExecutor] = None,
    ) -> None:
        self.settings = settings
        self._owns_executor = executor is None
        self._executor = executor or ThreadPoolExecutor(
            max_workers=settings.tool_workers,
            thread_name_prefix="resigner-tool",
        )

    # ------------------------------------------------------------------
    # Command construction
    # ------------------------------------------------------------------

    def align_command(self, input_path: Path, output_path: Path) -> List[str]:
        command = [str(self.settings.zipalign)]
        if self.settings.align_page_shared_objects:
            command.append("-p")
        command += [
            "-f",
            str(self.settings.align_boundary),
            str(input_path),
            str(output_path),
        ]
        return command

    def sign_command(
        self,
        credential: SigningCredential,
        input_path: Path,
        output_path: Path,
    ) -> List[str]:
        s = self.settings
        return [
            str(s.apksigner),
            "sign",
            "--ks", str(credential.keystore_path),
            "--ks-key-alias", credential.key_alias,
            "--ks-pass", f"env:{KEYSTORE_PASS_ENV}",
            "--key-pass", f"env:{KEY_PASS_ENV}",
            "--v1-signing-enabled", _flag(s.v1_signing_enabled),
            "--v2-signing-enabled", _flag(s.v2_signing_enabled),
            "--v3-signing-enabled", _flag(s.v3_signing_enabled),
            "--v4-signing-enabled", _flag(s.v4_signing_enabled),
            "--min-sdk-version", str(s.min_sdk_version),
            "--out", str(output_path),
            str(input_path),
        ]

    def verify_command(self, signed_path: Path) -> List[str]:
        return [
            str(self.settings.apksigner),
            "verify",
            "--verbose",
            str(signed_path),
        ]

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def align(self, input_path: Path, output_path: Path) -> ToolResult:
        return await self._submit(
            "align",
            self.align_command(input_path, output_path),
        )

    async def sign(
        self,
        credential: SigningCredential,
        input_path: Path,
        output_path: Path,
    ) -> ToolResult:
        env = {
            KEYSTORE_PASS_ENV: credential.store_password.get_secret_value(),
            KEY_PASS_ENV: credential.resolved_key_password().get_secret_value(),
        }
        return await self._submit(
            "sign",
            self.sign_command(credential, input_path, output_path),
            extra_env=env,
        )

    async def verify(self, signed_path: Path) -> ToolResult:
        return await self._submit("verify", self.verify_command(signed_path))

    def close(self) -> None:
        if self._owns_executor:
            self._executor.shutdown(wait=True)

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def _submit(
        self,
        tool: str,
        command: List[str],
        extra_env: Optional[Dict[str, str]] = None,
    ) -> ToolResult:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(
            self._executor,
            functools.partial(self._run, tool, command, extra_env),
        )

    def _run(
        self,
        tool: str,
        command: List[str],
        extra_env: Optional[Dict[str, str]] = None,
    ) -> ToolResult:
        env_vars = os.environ.copy()
        if extra_env:
            env_vars.update(extra_env)

        timeout = self.settings.tool_timeout_seconds
        started = time.monotonic()

        try:
            process = subprocess.run(
                command,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                timeout=timeout,
                env=env_vars,
                check=False,
            )
        except subprocess.TimeoutExpired as exc:
            logger.warning(
                "tool_timed_out",
                extra={"tool": tool, "timeout_seconds": timeout},
            )
            return ToolResult(
                tool=tool,
                argv=command,
                returncode=None,
                stdout=_decode(exc.stdout),
                stderr=(
                    _decode(exc.stderr)
                    or f"{tool} timed out after {timeout:g}s"
                ),
                timed_out=True,
                duration_seconds=time.monotonic() - started,
            )
        except OSError as exc:
            logger.error(
                "tool_launch_failed",
                extra={"tool": tool, "error_type": type(exc).__name__},
            )
            return ToolResult(
                tool=tool,
                argv=command,
                returncode=None,
                stderr=f"Failed to invoke {tool}: {exc}",
                duration_seconds=time.monotonic() - started,
            )

        result = ToolResult(
            tool=tool,
            argv=command,
            returncode=process.returncode,
            stdout=_decode(process.stdout),
            stderr=_decode(process.stderr),
            duration_seconds=time.monotonic() - started,
        )

        logger.info(
            "tool_completed",
            extra={
                "tool": tool,
                "returncode": result.returncode,
                "duration_seconds": round(result.duration_seconds, 3),
            },
        )
        return result


def _decode(raw: Optional[bytes]) -> str:
    if raw is None:
        return ""
    if isinstance(raw, str):
        return raw
    return raw.decode("utf-8", errors="ignore")
