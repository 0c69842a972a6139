"""
Tests for the setup orchestrator state machine
"""

import asyncio
import shutil

import pytest

from conftest import FakeBench, FakeDownloader, FakeModels, FakeRuntimes, FakeService
from enginekit.config import EngineSettings
from enginekit.exceptions import (
    AggregateBenchmarkFailure,
    BenchmarkError,
    InstallError,
    ServiceStartError,
    SetupInProgressError,
    SetupStateError,
)
from enginekit.orchestrator import SetupPhase, select_best_entry
from enginekit.progress import DownloadProgress
from enginekit.runtime import RuntimeProvisioner
from enginekit.schema import BenchmarkEntry, ComputeCandidate

CPU = ComputeCandidate(label="CPU", compute_mode="cpu", gpu_backend="none")
CUDA = ComputeCandidate(label="CUDA 12.4", compute_mode="gpu", gpu_backend="cuda")


def _entry(candidate, tier, tps):
    return BenchmarkEntry(candidate=candidate, tokens_per_second=tps, tier=tier, model_id=f"tier{tier}")


class TestSelectBestEntry:
    """Selection rule after the sweep"""

    def test_tier_dominates_speed(self):
        entries = [_entry(CPU, 3, 90.0), _entry(CUDA, 4, 10.0)]
        assert select_best_entry(entries).candidate == CUDA

    def test_equal_tier_prefers_faster(self):
        entries = [_entry(CPU, 2, 55.0), _entry(CUDA, 2, 60.0)]
        assert select_best_entry(entries).tokens_per_second == 60.0

    def test_exact_tie_keeps_first_tested(self):
        entries = [_entry(CUDA, 2, 60.0), _entry(CPU, 2, 60.0)]
        assert select_best_entry(entries).candidate == CUDA

    def test_empty(self):
        assert select_best_entry([]) is None


class TestSweep:
    """Detecting, provisioning and benchmarking up to selection"""

    @pytest.mark.asyncio
    async def test_sweep_reaches_selecting(self, make_orchestrator, cuda_vulkan_profile):
        bench = FakeBench({"CUDA 12.4": 200.0, "Vulkan": 90.0, "CPU": 25.0})
        orchestrator = make_orchestrator(cuda_vulkan_profile, bench)

        session = await orchestrator.run()

        assert session.phase is SetupPhase.SELECTING
        assert [e.candidate.label for e in session.entries] == ["CUDA 12.4", "Vulkan", "CPU"]
        assert session.chosen.candidate.gpu_backend == "cuda"
        assert session.recommended_model_id == "qwen3_14b_q4_k_m"
        assert session.selected_model_id == "qwen3_14b_q4_k_m"
        assert len(orchestrator.tier_table) == 6

    @pytest.mark.asyncio
    async def test_candidates_run_in_order_one_at_a_time(self, make_orchestrator, cuda_vulkan_profile):
        bench = FakeBench({"CUDA 12.4": 200.0, "Vulkan": 90.0, "CPU": 25.0})
        runtimes = FakeRuntimes()
        orchestrator = make_orchestrator(cuda_vulkan_profile, bench, runtimes=runtimes)

        await orchestrator.run()

        assert runtimes.installed == ["cuda-12.4", "vulkan", "cpu"]
        assert [label for label, _, _ in bench.calls] == ["CUDA 12.4", "Vulkan", "CPU"]

    @pytest.mark.asyncio
    async def test_reference_model_installed_once(self, make_orchestrator, cuda_vulkan_profile, progress):
        models = FakeModels(progress=progress)
        bench = FakeBench({"CUDA 12.4": 200.0, "Vulkan": 90.0, "CPU": 25.0})
        orchestrator = make_orchestrator(cuda_vulkan_profile, bench, models=models)

        await orchestrator.run()

        assert models.installed == ["qwen3_0_6b_q4_k_m"]
        assert all(ref == "qwen3_0_6b_q4_k_m" for _, ref, _ in bench.calls)

    @pytest.mark.asyncio
    async def test_failed_runtime_is_skipped(self, make_orchestrator, cuda_vulkan_profile):
        bench = FakeBench({"CUDA 12.4": 200.0, "CPU": 25.0})
        runtimes = FakeRuntimes(fail_keys={"vulkan"})
        orchestrator = make_orchestrator(cuda_vulkan_profile, bench, runtimes=runtimes)

        session = await orchestrator.run()

        assert session.phase is SetupPhase.SELECTING
        assert [e.candidate.label for e in session.entries] == ["CUDA 12.4", "CPU"]
        assert [c.label for c, _ in session.failures] == ["Vulkan"]
        assert "Vulkan" not in [label for label, _, _ in bench.calls]

    @pytest.mark.asyncio
    async def test_runtime_filesystem_error_is_skipped(self, make_orchestrator, cuda_vulkan_profile, tmp_path,
                                                       monkeypatch):
        root = tmp_path / "runtime"
        for key in ("cuda-12.4", "cpu"):
            (root / key).mkdir(parents=True)
            (root / key / "llama-server").write_bytes(b"bin")
        bundle = tmp_path / "bundle"
        (bundle / "runtime" / "vulkan").mkdir(parents=True)
        (bundle / "runtime" / "vulkan" / "llama-server").write_bytes(b"bin")

        def failing_copy(src, dst, *args, **kwargs):
            raise shutil.Error([(str(src), str(dst), "Permission denied")])

        monkeypatch.setattr("enginekit.runtime.provisioner.shutil.copytree", failing_copy)
        runtimes = RuntimeProvisioner(root, downloader=FakeDownloader(), bundled_dir=bundle)
        bench = FakeBench({"CUDA 12.4": 200.0, "Vulkan": 90.0, "CPU": 25.0})
        orchestrator = make_orchestrator(cuda_vulkan_profile, bench, runtimes=runtimes)

        session = await orchestrator.run()

        assert session.phase is SetupPhase.SELECTING
        assert [e.candidate.label for e in session.entries] == ["CUDA 12.4", "CPU"]
        assert [c.label for c, _ in session.failures] == ["Vulkan"]
        assert isinstance(session.failures[0][1], InstallError)

    @pytest.mark.asyncio
    async def test_failed_benchmark_is_skipped(self, make_orchestrator, cuda_vulkan_profile):
        bench = FakeBench({"CUDA 12.4": BenchmarkError("crashed"), "Vulkan": 60.0, "CPU": 25.0})
        orchestrator = make_orchestrator(cuda_vulkan_profile, bench)

        session = await orchestrator.run()

        assert session.phase is SetupPhase.SELECTING
        assert session.chosen.candidate.label == "Vulkan"
        assert session.recommended_model_id == "qwen3_4b_q4_k_m"

    @pytest.mark.asyncio
    async def test_all_runtimes_failing_ends_in_error(self, make_orchestrator, cuda_vulkan_profile, settings_store):
        bench = FakeBench({})
        runtimes = FakeRuntimes(fail_keys={"cuda-12.4", "vulkan", "cpu"})
        orchestrator = make_orchestrator(cuda_vulkan_profile, bench, runtimes=runtimes)

        session = await orchestrator.run()

        assert session.phase is SetupPhase.ERROR
        assert isinstance(session.error, AggregateBenchmarkFailure)
        assert len(session.error.failures) == 3
        assert session.entries == []
        assert bench.calls == []
        assert not settings_store.path.exists()

    @pytest.mark.asyncio
    async def test_reference_model_failure_is_fatal_and_resumable(self, make_orchestrator, cpu_profile, progress):
        models = FakeModels(progress=progress, fail_ids={"qwen3_0_6b_q4_k_m"})
        bench = FakeBench({"CPU": 30.0})
        orchestrator = make_orchestrator(cpu_profile, bench, models=models)

        session = await orchestrator.run()
        assert session.phase is SetupPhase.ERROR
        assert session.error_phase is SetupPhase.PROVISIONING
        assert isinstance(session.error, InstallError)

        models.fail_ids.clear()
        session = await orchestrator.retry_from_phase(SetupPhase.PROVISIONING)
        assert session.phase is SetupPhase.SELECTING
        assert session.recommended_model_id == "qwen3_1_7b_q4_k_m"

    @pytest.mark.asyncio
    async def test_hardware_detection_failure_falls_back_to_cpu(self, settings_store, progress):
        from enginekit.orchestrator import SetupOrchestrator

        def broken_probe():
            raise RuntimeError("no /proc")

        bench = FakeBench({"CPU": 30.0})
        orchestrator = SetupOrchestrator(
            FakeRuntimes(), FakeModels(), bench, FakeService(), settings_store,
            probe=broken_probe, progress=progress,
        )

        session = await orchestrator.run()

        assert session.phase is SetupPhase.SELECTING
        assert [c.label for c in session.candidates] == ["CPU"]

    @pytest.mark.asyncio
    async def test_progress_cleared_between_phases(self, make_orchestrator, cpu_profile, progress):
        seen = []
        progress.subscribe(seen.append)
        orchestrator = make_orchestrator(cpu_profile, FakeBench({"CPU": 30.0}))

        await orchestrator.run()

        assert any(isinstance(p, DownloadProgress) for p in seen)
        assert seen[-1] is None
        assert progress.latest() is None


class TestConfirm:
    """Selection, final install and service start"""

    @pytest.mark.asyncio
    async def test_accepting_recommendation_persists_outcome(self, make_orchestrator, cuda_vulkan_profile, settings_store):
        service = FakeService()
        models = FakeModels()
        bench = FakeBench({"CUDA 12.4": 200.0, "Vulkan": 90.0, "CPU": 25.0})
        orchestrator = make_orchestrator(cuda_vulkan_profile, bench, models=models, service=service)

        await orchestrator.run()
        session = await orchestrator.confirm()

        assert session.phase is SetupPhase.DONE
        assert models.installed == ["qwen3_0_6b_q4_k_m", "qwen3_14b_q4_k_m"]
        model_id, config, gpu_layers = service.starts[-1]
        assert model_id == "qwen3_14b_q4_k_m"
        assert config.gpu_backend == "cuda"
        assert gpu_layers == 20

        saved = settings_store.load()
        assert saved.model_id == "qwen3_14b_q4_k_m"
        assert saved.compute_mode == "gpu"
        assert saved.gpu_backend == "cuda"
        assert saved.cuda_version == "12.4"
        assert saved.auto_start is True

    @pytest.mark.asyncio
    async def test_user_can_pick_another_tier(self, make_orchestrator, cuda_vulkan_profile, settings_store):
        orchestrator = make_orchestrator(cuda_vulkan_profile, FakeBench({"CUDA 12.4": 200.0, "CPU": 25.0}))

        await orchestrator.run()
        session = await orchestrator.confirm(tier=1)

        assert session.phase is SetupPhase.DONE
        assert session.recommended_model_id == "qwen3_14b_q4_k_m"
        assert session.selected_model_id == "qwen3_1_7b_q4_k_m"
        assert settings_store.load().model_id == "qwen3_1_7b_q4_k_m"

    @pytest.mark.asyncio
    async def test_reference_model_is_not_reinstalled(self, make_orchestrator, cpu_profile):
        models = FakeModels()
        orchestrator = make_orchestrator(cpu_profile, FakeBench({"CPU": 10.0}), models=models)

        await orchestrator.run()
        await orchestrator.confirm()

        assert models.installed == ["qwen3_0_6b_q4_k_m"]

    @pytest.mark.asyncio
    async def test_desired_config_read_at_start_time(self, make_orchestrator, cpu_profile):
        desired = {"settings": EngineSettings(gpu_layers=20)}
        service = FakeService()
        orchestrator = make_orchestrator(
            cpu_profile, FakeBench({"CPU": 30.0}), service=service,
            get_desired_config=lambda: desired["settings"],
        )

        await orchestrator.run()
        desired["settings"] = EngineSettings(gpu_layers=32)
        await orchestrator.confirm()

        assert service.starts[-1][2] == 32

    @pytest.mark.asyncio
    async def test_confirm_outside_selecting_is_rejected(self, make_orchestrator, cpu_profile):
        orchestrator = make_orchestrator(cpu_profile, FakeBench({"CPU": 30.0}))
        with pytest.raises(SetupStateError):
            await orchestrator.confirm()

    @pytest.mark.asyncio
    async def test_start_failure_keeps_engine_and_retries_final_step(
            self, make_orchestrator, cuda_vulkan_profile, settings_store):
        service = FakeService(fail_times=1)
        bench = FakeBench({"CUDA 12.4": 200.0, "CPU": 25.0})
        orchestrator = make_orchestrator(cuda_vulkan_profile, bench, service=service)

        await orchestrator.run()
        session = await orchestrator.confirm()

        assert session.phase is SetupPhase.ERROR
        assert session.error_phase is SetupPhase.STARTING
        assert isinstance(session.error, ServiceStartError)
        assert session.chosen.candidate.label == "CUDA 12.4"
        assert not settings_store.path.exists()

        calls_before = len(bench.calls)
        session = await orchestrator.retry_from_phase("starting")

        assert session.phase is SetupPhase.DONE
        assert len(bench.calls) == calls_before
        assert settings_store.load().gpu_backend == "cuda"

    @pytest.mark.asyncio
    async def test_retry_requires_error_state(self, make_orchestrator, cpu_profile):
        orchestrator = make_orchestrator(cpu_profile, FakeBench({"CPU": 30.0}))
        await orchestrator.run()
        with pytest.raises(SetupStateError):
            await orchestrator.retry_from_phase(SetupPhase.STARTING)


class TestCancellation:
    """Cancel and single-session rules"""

    @pytest.mark.asyncio
    async def test_cancel_during_benchmarking(self, make_orchestrator, cpu_profile, settings_store):
        previous = EngineSettings(model_id="qwen3_4b_q4_k_m", compute_mode="cpu", auto_start=True)
        settings_store.save(previous)
        before = settings_store.path.read_text()

        runtimes = FakeRuntimes()
        bench = FakeBench({"CPU": 30.0}, block_on="CPU")
        orchestrator = make_orchestrator(cpu_profile, bench, runtimes=runtimes)

        task = asyncio.create_task(orchestrator.run())
        await asyncio.wait_for(bench.started.wait(), timeout=5)
        assert orchestrator.phase is SetupPhase.BENCHMARKING

        assert await orchestrator.cancel() is True
        session = await asyncio.wait_for(task, timeout=5)

        assert session.phase is SetupPhase.IDLE
        assert session.cancelled
        assert session.error is None
        assert orchestrator.session is None
        assert bench.aborted
        assert runtimes.cancel_calls >= 1
        assert settings_store.path.read_text() == before

    @pytest.mark.asyncio
    async def test_second_session_is_rejected(self, make_orchestrator, cpu_profile):
        bench = FakeBench({"CPU": 30.0}, block_on="CPU")
        orchestrator = make_orchestrator(cpu_profile, bench)

        task = asyncio.create_task(orchestrator.run())
        await asyncio.wait_for(bench.started.wait(), timeout=5)

        with pytest.raises(SetupInProgressError):
            await orchestrator.run()

        await orchestrator.cancel()
        await asyncio.wait_for(task, timeout=5)

    @pytest.mark.asyncio
    async def test_cancel_at_selection_discards_session(self, make_orchestrator, cpu_profile, settings_store):
        orchestrator = make_orchestrator(cpu_profile, FakeBench({"CPU": 30.0}))
        await orchestrator.run()

        assert await orchestrator.cancel() is True
        assert orchestrator.phase is SetupPhase.IDLE
        assert not settings_store.path.exists()

        session = await orchestrator.run()
        assert session.phase is SetupPhase.SELECTING

    @pytest.mark.asyncio
    async def test_cancel_not_permitted_after_done(self, make_orchestrator, cpu_profile):
        orchestrator = make_orchestrator(cpu_profile, FakeBench({"CPU": 30.0}))
        await orchestrator.run()
        await orchestrator.confirm()

        assert await orchestrator.cancel() is False
        assert orchestrator.phase is SetupPhase.DONE

    @pytest.mark.asyncio
    async def test_task_cancellation_cleans_up(self, make_orchestrator, cpu_profile):
        bench = FakeBench({"CPU": 30.0}, block_on="CPU")
        orchestrator = make_orchestrator(cpu_profile, bench)

        task = asyncio.create_task(orchestrator.run())
        await asyncio.wait_for(bench.started.wait(), timeout=5)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert orchestrator.session is None
        assert bench.aborted

    @pytest.mark.asyncio
    async def test_cancel_while_reference_model_downloads(self, make_orchestrator, cpu_profile, settings_store,
                                                          progress):
        models = FakeModels(progress=progress, block_on="qwen3_0_6b_q4_k_m")
        bench = FakeBench({"CPU": 30.0})
        orchestrator = make_orchestrator(cpu_profile, bench, models=models)

        task = asyncio.create_task(orchestrator.run())
        assert await asyncio.to_thread(models.entered.wait, 5)
        assert orchestrator.phase is SetupPhase.PROVISIONING

        assert await orchestrator.cancel() is True
        session = await asyncio.wait_for(task, timeout=5)

        assert session.phase is SetupPhase.IDLE
        assert session.error is None
        assert models.cancel_calls >= 1
        assert bench.calls == []
        assert not settings_store.path.exists()

    @pytest.mark.asyncio
    async def test_cancel_while_final_model_downloads(self, make_orchestrator, cpu_profile, settings_store,
                                                      progress):
        models = FakeModels(progress=progress, block_on="qwen3_1_7b_q4_k_m")
        service = FakeService()
        orchestrator = make_orchestrator(cpu_profile, FakeBench({"CPU": 30.0}), models=models, service=service)
        await orchestrator.run()

        task = asyncio.create_task(orchestrator.confirm("qwen3_1_7b_q4_k_m"))
        assert await asyncio.to_thread(models.entered.wait, 5)
        assert orchestrator.phase is SetupPhase.INSTALLING_FINAL

        assert await orchestrator.cancel() is True
        session = await asyncio.wait_for(task, timeout=5)

        assert session.phase is SetupPhase.IDLE
        assert service.starts == []
        assert "qwen3_1_7b_q4_k_m" not in models.installed
        assert not settings_store.path.exists()

    @pytest.mark.asyncio
    async def test_cancel_while_service_starting_stops_it(self, make_orchestrator, cpu_profile, settings_store):
        service = FakeService(gated=True)
        orchestrator = make_orchestrator(cpu_profile, FakeBench({"CPU": 30.0}), service=service)
        await orchestrator.run()

        task = asyncio.create_task(orchestrator.confirm())
        await asyncio.wait_for(service.entered.wait(), timeout=5)
        assert orchestrator.phase is SetupPhase.STARTING

        assert await orchestrator.cancel() is True
        assert orchestrator.phase is SetupPhase.IDLE
        service.release()
        session = await asyncio.wait_for(task, timeout=5)

        assert session.phase is SetupPhase.IDLE
        assert service.running_model is None
        assert service.stop_calls == 1
        assert not settings_store.path.exists()

    @pytest.mark.asyncio
    async def test_each_session_clears_stale_cancel(self, make_orchestrator, cpu_profile, progress):
        models = FakeModels(progress=progress)
        runtimes = FakeRuntimes()
        orchestrator = make_orchestrator(cpu_profile, FakeBench({"CPU": 30.0}), runtimes=runtimes, models=models)
        models.cancel_active_download()

        session = await orchestrator.run()

        assert session.phase is SetupPhase.SELECTING
        assert runtimes.reset_calls == 1 and models.reset_calls == 1


class TestDrift:
    @pytest.mark.asyncio
    async def test_drift_flag_follows_desired_model(self, make_orchestrator, cpu_profile, settings_store):
        service = FakeService()
        orchestrator = make_orchestrator(cpu_profile, FakeBench({"CPU": 30.0}), service=service)
        await orchestrator.run()
        await orchestrator.confirm()

        assert orchestrator.config_changed is False
        settings_store.update(model_id="qwen3_8b_q4_k_m")
        assert orchestrator.config_changed is True
