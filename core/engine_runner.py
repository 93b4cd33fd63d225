"""
Execution collaborator adapter.

Runs the external step-execution engine as a subprocess and converts its
output into an EngineResult. The engine's step semantics are opaque here;
only its JSON output and failure signals are interpreted.
"""

import asyncio
import json
import logging
import shlex
from typing import List, Optional

import config
from core.collaborators import ExecutionCollaborator
from core.models import EngineResult

logger = logging.getLogger("EngineRunner")


class EngineRunner(ExecutionCollaborator):
    """Invokes ``ENGINE_COMMAND --recipe <path> --type <type> --input <input>``."""

    def __init__(self, command: Optional[str] = None, timeout: Optional[float] = None, cwd: Optional[str] = None):
        self.command = shlex.split(command or config.ENGINE_COMMAND)
        self.timeout = timeout if timeout is not None else config.ENGINE_TIMEOUT_SECONDS
        self.cwd = cwd

    def build_args(self, recipe_path: str, step_type: str, user_input: str) -> List[str]:
        return [*self.command, "--recipe", recipe_path, "--type", step_type, "--input", user_input]

    async def run(self, recipe_path: str, step_type: str, user_input: str) -> EngineResult:
        """
        Run the engine once.

        Args:
            recipe_path: Path of the recipe JSON file
            step_type: ``autocomplete`` or ``url``
            user_input: Query string or detail-page URL

        Returns:
            EngineResult; failures carry an ``error_type`` tag
        """
        logger.info(f"Running engine: {step_type} with input \"{user_input[:50]}\"")
        args = self.build_args(recipe_path, step_type, user_input)

        try:
            proc = await asyncio.create_subprocess_exec(
                *args,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=self.cwd,
            )
        except OSError as e:
            logger.error(f"Engine spawn failed: {e}")
            return EngineResult(success=False, error=str(e), error_type="spawn_error")

        try:
            raw_out, raw_err = await asyncio.wait_for(proc.communicate(), timeout=self.timeout)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            logger.error(f"Engine timed out after {self.timeout}s")
            return EngineResult(
                success=False,
                error=f"Engine timeout after {self.timeout}s",
                error_type="engine_crash",
                exit_code=proc.returncode,
            )

        stdout = raw_out.decode("utf-8", errors="replace")
        stderr = raw_err.decode("utf-8", errors="replace")
        if stderr:
            logger.debug(f"Engine stderr: {stderr[:500]}")

        if proc.returncode != 0:
            logger.error(f"Engine failed with exit code {proc.returncode}")
            return EngineResult(
                success=False,
                error=stderr or stdout or f"Engine exited with code {proc.returncode}",
                stdout=stdout,
                stderr=stderr,
                exit_code=proc.returncode,
                error_type="engine_crash",
            )

        try:
            data = json.loads(stdout)
        except json.JSONDecodeError as e:
            logger.error(f"Engine output not valid JSON: {e}")
            return EngineResult(
                success=False,
                error=f"Invalid JSON output: {e}",
                stdout=stdout,
                stderr=stderr,
                exit_code=0,
                error_type="invalid_json",
            )

        results = data.get("results") if isinstance(data, dict) else data
        return EngineResult(success=True, results=results, stdout=stdout, stderr=stderr, exit_code=0)
