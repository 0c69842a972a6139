#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Reference-model throughput benchmark.

Runs llama-bench from a candidate's runtime build against the small
reference model and converts the measured generation speed into a
recommended model tier.
"""

import asyncio
import json
import logging
from typing import Optional, Union

from ..exceptions import BenchmarkError
from ..hardware.hardware_schema import HardwareProfile
from ..models.catalog import REFERENCE_MODEL_ID, model_for_tier
from ..models.tiers import cap_tier, clamp_gpu_layers, select_tier
from ..schema import BenchmarkResult, ComputeCandidate, ComputeConfig, effective_gpu_layers

logger = logging.getLogger(__name__)

# ============================================================================
# BENCHMARK CONSTANTS
# ============================================================================

BENCHMARK_TIMEOUT = 300.0   # seconds
GENERATED_TOKENS = 64


def offload_layers(config: ComputeConfig, gpu_layers: int, vram_bytes: Optional[int] = None) -> int:
    """
    Number of layers to offload for a compute mode.

    CPU offloads nothing, full GPU mode offloads everything, hybrid offloads
    the configured count capped by the available VRAM.
    """
    layers = effective_gpu_layers(config.compute_mode, gpu_layers)
    if config.compute_mode == "hybrid":
        layers = clamp_gpu_layers(layers, vram_bytes)
    return layers


def parse_bench_output(output: Union[bytes, str]) -> float:
    """
    Extract generation throughput from `llama-bench -o json` output.

    llama-bench reports one JSON object per test; the text-generation test
    is the one with n_gen > 0. Throughput is n_gen over the mean wall-clock
    time, falling back to the tool's own avg_ts.

    Raises:
        BenchmarkError: If no positive throughput can be read
    """
    text = output.decode("utf-8", errors="replace") if isinstance(output, bytes) else output
    start, end = text.find("["), text.rfind("]")
    if start < 0 or end <= start:
        raise BenchmarkError("llama-bench produced no JSON output")
    try:
        entries = json.loads(text[start:end + 1])
    except ValueError as e:
        raise BenchmarkError(f"Unparsable llama-bench output: {e}") from e

    for entry in entries:
        if not isinstance(entry, dict):
            continue
        try:
            n_gen = int(entry.get("n_gen") or 0)
            if n_gen <= 0:
                continue
            avg_ns = float(entry.get("avg_ns") or 0)
            tps = n_gen / (avg_ns / 1e9) if avg_ns > 0 else float(entry.get("avg_ts") or 0)
        except (TypeError, ValueError):
            continue
        if tps > 0:
            return tps
    raise BenchmarkError("llama-bench reported no positive generation throughput")


class BenchmarkRunner:
    """
    Runs llama-bench for one compute candidate at a time.

    Args:
        runtimes: RuntimeProvisioner used to locate llama-bench
        models: ModelProvisioner used to locate the reference model
        spawn: Subprocess factory with the asyncio.create_subprocess_exec
            signature (injectable for tests)
        timeout: Seconds before a pass is killed
    """

    def __init__(self, runtimes, models, spawn=None, timeout: float = BENCHMARK_TIMEOUT):
        self.runtimes = runtimes
        self.models = models
        self.timeout = timeout
        self._spawn = spawn or asyncio.create_subprocess_exec
        self._process = None
        self._aborted = False

    def abort(self) -> None:
        """Kill the in-flight llama-bench process, if any."""
        self._aborted = True
        process = self._process
        if process is not None and process.returncode is None:
            logger.info("Aborting benchmark process")
            try:
                process.kill()
            except ProcessLookupError:
                pass

    async def _reap(self, process) -> None:
        if process.returncode is None:
            try:
                process.kill()
            except ProcessLookupError:
                pass
        await process.wait()

    async def benchmark(
        self,
        candidate: ComputeCandidate,
        reference_model_id: str = REFERENCE_MODEL_ID,
        gpu_layers: int = 20,
        profile: Optional[HardwareProfile] = None,
    ) -> BenchmarkResult:
        """
        Measure reference-model throughput on a candidate.

        Args:
            candidate: Compute candidate whose runtime build is used
            reference_model_id: Model to benchmark (must be installed)
            gpu_layers: Offloaded layers for hybrid mode
            profile: When given, the tier is capped by RAM/VRAM

        Returns:
            BenchmarkResult with throughput and recommended tier/model

        Raises:
            BenchmarkError: Missing prerequisites, launch failure, non-zero
                exit, timeout, abort, or unusable output
        """
        config = candidate.config
        model_path = self.models.model_path(reference_model_id)
        if not model_path.is_file():
            raise BenchmarkError(f"Reference model {reference_model_id} is not installed", candidate=candidate)
        bench = self.runtimes.find_bench_binary(config)
        if bench is None:
            raise BenchmarkError(f"llama-bench not found for runtime {config.runtime_key}", candidate=candidate)

        vram = profile.vram_bytes if profile else None
        layers = offload_layers(config, gpu_layers, vram)
        cmd = [
            str(bench), "-m", str(model_path),
            "-p", "0", "-n", str(GENERATED_TOKENS), "-r", "1",
            "-ngl", str(layers), "-o", "json",
        ]
        logger.debug("Running %s", " ".join(cmd))

        self._aborted = False
        try:
            process = await self._spawn(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=str(bench.parent),
            )
        except OSError as e:
            raise BenchmarkError(f"Failed to launch llama-bench: {e}", candidate=candidate) from e

        self._process = process
        try:
            if self._aborted:
                # abort() landed while the spawn was pending and saw no process
                raise BenchmarkError("Benchmark aborted", candidate=candidate)
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=self.timeout)
        except asyncio.TimeoutError:
            raise BenchmarkError(f"llama-bench timed out after {self.timeout:.0f}s", candidate=candidate)
        finally:
            await self._reap(process)
            self._process = None

        if self._aborted:
            raise BenchmarkError("Benchmark aborted", candidate=candidate)
        if process.returncode != 0:
            tail = (stderr or b"").decode("utf-8", errors="replace").strip()[-400:]
            raise BenchmarkError(f"llama-bench exited with status {process.returncode}: {tail}", candidate=candidate)

        try:
            tps = parse_bench_output(stdout)
        except BenchmarkError as e:
            e.candidate = candidate
            raise

        tier = select_tier(tps)
        if profile is not None:
            tier = cap_tier(tier, profile.total_memory_bytes, profile.vram_bytes, config.compute_mode)
        result = BenchmarkResult(
            tokens_per_second=round(tps, 2),
            recommended_tier=tier,
            recommended_model_id=model_for_tier(tier).id,
            gpu_layers=layers,
        )
        logger.info("%s: %.1f tok/s -> tier %d (%s)", candidate.label, tps, tier, result.recommended_model_id)
        return result

    async def run_benchmark(self, config: ComputeConfig, gpu_layers: int = 20,
                            profile: Optional[HardwareProfile] = None) -> BenchmarkResult:
        """Benchmark a bare ComputeConfig with the default reference model."""
        candidate = ComputeCandidate(label=config.runtime_key, **config.model_dump())
        return await self.benchmark(candidate, REFERENCE_MODEL_ID, gpu_layers, profile)
