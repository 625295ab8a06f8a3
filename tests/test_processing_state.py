"""测试处理状态模型与阶段推导"""

from models.processing_state import PipelinePhase, ProcessingState, derive_phase


class TestDerivePhase:
    """derive_phase 测试类"""

    def test_empty_store(self):
        assert derive_phase(False, False, 0, 0) == PipelinePhase.EMPTY

    def test_bible_only(self):
        assert derive_phase(True, False, 0, 0) == PipelinePhase.BIBLE_READY

    def test_outline_ready(self):
        assert derive_phase(True, True, 0, 3) == PipelinePhase.OUTLINE_READY

    def test_mid_chapters(self):
        assert derive_phase(True, True, 1, 3) == PipelinePhase.CHAPTER

    def test_complete(self):
        assert derive_phase(True, True, 3, 3) == PipelinePhase.COMPLETE
        assert derive_phase(True, True, 0, 0) == PipelinePhase.COMPLETE

    def test_external_short_circuits(self):
        """外部导入优先于任何生成状态"""
        assert derive_phase(True, True, 1, 3, is_external=True) == PipelinePhase.EXTERNAL
        assert derive_phase(False, False, 0, 0, is_external=True) == PipelinePhase.EXTERNAL


class TestProcessingState:
    """ProcessingState 测试类"""

    def test_initialization(self):
        state = ProcessingState(total_chapters=4)
        assert state.completed_chapters == 0
        assert state.current_phase == "initialization"
        assert state.progress_percentage == 0.0

    def test_chapter_progress(self):
        state = ProcessingState(total_chapters=4)
        state.start_chapter(0)
        state.finish_chapter()
        assert state.current_chapter == 0
        assert state.current_phase == "chapter"
        assert state.progress_percentage == 25.0

    def test_zero_total(self):
        assert ProcessingState().progress_percentage == 0.0

    def test_complete(self):
        state = ProcessingState(total_chapters=1)
        state.start_chapter(0)
        state.complete()
        assert state.current_phase == "completed"
        assert state.current_chapter is None
        assert state.end_time is not None
        assert state.elapsed_time >= 0

    def test_fail_records_error(self):
        state = ProcessingState()
        state.fail("boom")
        assert state.current_phase == "failed"
        assert len(state.errors) == 1
        assert "boom" in state.errors[0]

    def test_get_summary(self):
        state = ProcessingState(total_chapters=2, resumed_from=1)
        state.add_error("warning")
        summary = state.get_summary()
        assert summary["total_chapters"] == 2
        assert summary["resumed_from"] == 1
        assert summary["errors_count"] == 1
        assert "elapsed_time" in summary
