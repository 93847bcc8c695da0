"""Entrypoint and loop for the device agent."""

from __future__ import annotations

import asyncio
import logging
import signal
from pathlib import Path

import httpx

from agent.client import DeviceControlPlaneClient
from agent.config import AgentSettings, get_agent_settings
from agent.offline import OfflineBuffer, OfflineBufferConfig
from agent.runner import InstructionRunner, simulated_executor
from fleetctl.errors import DeviceAuthError
from fleetctl.queue.instruction import Instruction

logger = logging.getLogger(__name__)


class DeviceAgent:
    """Coordinates registration, the heartbeat long-poll loop, execution and reporting."""

    def __init__(self, settings: AgentSettings, runner: InstructionRunner | None = None) -> None:
        self.settings = settings
        self.client = DeviceControlPlaneClient(
            base_url=settings.control_plane_url,
            device_code=settings.device_code,
        )
        self.runner = runner or InstructionRunner(simulated_executor(settings.simulated_run_seconds))
        self._shutdown_event = asyncio.Event()
        self._jobs: set[asyncio.Task] = set()
        self.offline_buffer = OfflineBuffer(
            OfflineBufferConfig(
                directory=Path(settings.offline_dir),
                max_files=settings.offline_max_files,
                max_age_seconds=settings.offline_max_age_seconds,
            )
        )

    def request_shutdown(self) -> None:
        """Trigger graceful shutdown."""
        self._shutdown_event.set()

    async def run(self) -> None:
        """Run until a shutdown signal is received."""
        logger.info(
            "agent_starting",
            extra={"device_code": self.settings.device_code, "control_plane": self.settings.control_plane_url},
        )

        while not self._shutdown_event.is_set():
            try:
                await self._register()
                break
            except (httpx.HTTPError, OSError) as exc:
                logger.warning(
                    "agent_registration_failed",
                    extra={"device_code": self.settings.device_code, "error": str(exc)},
                )
                await self._pause(self.settings.retry_interval_seconds)

        while not self._shutdown_event.is_set():
            try:
                await self._replay_offline_buffer()
                instructions = await self.client.heartbeat(
                    metrics=self._metrics(),
                    poll_timeout=self.settings.poll_timeout_seconds,
                    app_version=self.settings.app_version,
                )
            except httpx.HTTPStatusError as exc:
                logger.warning(
                    "agent_heartbeat_rejected",
                    extra={"device_code": self.settings.device_code, "status_code": exc.response.status_code},
                )
                if exc.response.status_code == 401:
                    await self._reregister()
                await self._pause(self.settings.retry_interval_seconds)
                continue
            except (httpx.HTTPError, OSError) as exc:
                logger.warning(
                    "agent_heartbeat_failed",
                    extra={"device_code": self.settings.device_code, "error": str(exc)},
                )
                await self._pause(self.settings.retry_interval_seconds)
                continue

            for instruction in instructions:
                self._start(instruction)

        await self._drain_jobs()
        await self.client.close()
        logger.info("agent_stopping", extra={"device_code": self.settings.device_code})

    async def _register(self) -> None:
        descriptors = {"app_version": self.settings.app_version}
        if self.settings.model:
            descriptors["model"] = self.settings.model
        if self.settings.brand:
            descriptors["brand"] = self.settings.brand
        await self.client.register(
            self.settings.device_name,
            self.settings.resolved_certificate_request,
            descriptors,
        )

    async def _reregister(self) -> None:
        try:
            await self._register()
        except (httpx.HTTPError, OSError) as exc:
            logger.warning(
                "agent_registration_failed",
                extra={"device_code": self.settings.device_code, "error": str(exc)},
            )

    def _start(self, instruction: Instruction) -> None:
        job = asyncio.create_task(self._handle(instruction))
        self._jobs.add(job)
        job.add_done_callback(self._jobs.discard)

    async def _handle(self, instruction: Instruction) -> None:
        outcome = await self.runner.run(instruction)
        report = {
            "instruction_id": instruction.id,
            "task_id": instruction.task_id,
            "status": outcome.status,
            "output": outcome.output,
            "error_message": outcome.error_message,
            "started_at": outcome.started_at.isoformat(),
            "finished_at": outcome.finished_at.isoformat(),
        }
        await self._submit_or_buffer(report)

    def _metrics(self) -> dict:
        return {
            "running_tasks": len(self.runner.running_tasks()),
            "offline_backlog_size": self.offline_buffer.backlog_size(),
        }

    async def _submit_or_buffer(self, report: dict) -> None:
        try:
            await self.client.report_result(report)
        except (httpx.HTTPError, OSError, DeviceAuthError) as exc:
            logger.warning(
                "agent_report_buffered",
                extra={"instruction_id": report["instruction_id"], "error": str(exc)},
            )
            self.offline_buffer.write(report)

    async def _replay_offline_buffer(self) -> None:
        pending = self.offline_buffer.list_pending()
        if not pending:
            return

        for path in pending[: self.settings.offline_replay_batch_size]:
            report = self.offline_buffer.load(path)
            try:
                await self.client.report_result(report)
                self.offline_buffer.ack_delete(path)
            except (httpx.HTTPError, OSError):
                break
            await asyncio.sleep(self.settings.offline_replay_interval_seconds)

    async def _pause(self, seconds: float) -> None:
        try:
            await asyncio.wait_for(self._shutdown_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    async def _drain_jobs(self) -> None:
        if not self._jobs:
            return
        for job in list(self._jobs):
            job.cancel()
        await asyncio.gather(*self._jobs, return_exceptions=True)


async def run_agent(settings: AgentSettings | None = None) -> None:
    """Run the agent until interrupted or asked to stop."""
    agent = DeviceAgent(settings=settings or get_agent_settings())
    loop = asyncio.get_running_loop()

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, agent.request_shutdown)
        except NotImplementedError:
            pass

    await agent.run()


def main() -> None:
    """CLI entrypoint for the device agent."""
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
    asyncio.run(run_agent())


if __name__ == "__main__":
    main()
