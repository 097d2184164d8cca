"""Device reboot through the system reboot command."""

import asyncio
import logging


class Rebooter:
    """Requests a device reboot."""

    def __init__(self, command: str = "reboot"):
        self.logger = logging.getLogger("update_agent.process")
        self.command = command

    async def reboot(self) -> None:
        """Run the reboot command.

        Raises:
            RuntimeError: If the command can't be started or exits non-zero
        """
        self.logger.info("Triggering reboot")

        try:
            process = await asyncio.create_subprocess_exec(
                self.command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
            stdout, stderr = await process.communicate()
        except OSError as e:
            raise RuntimeError(f"Failed to run {self.command}: {e}") from e

        if stdout or stderr:
            self.logger.info(
                f"Reboot output: stdout: {stdout.decode(errors='replace')}, "
                f"stderr: {stderr.decode(errors='replace')}"
            )

        if process.returncode != 0:
            raise RuntimeError(
                f"Reboot failed: exit code {process.returncode}, "
                f"stderr: {stderr.decode(errors='replace')}"
            )
