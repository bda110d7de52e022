import asyncio

import pytest

from faceattend.enrollment import EnrollmentWorkflow, photo_thumbnail
from faceattend.exceptions import (
    AdvisorError,
    CameraError,
    CameraNotReadyError,
    DimensionMismatchError,
    DuplicateIdentityError,
    NoFaceDetectedError,
    NotReadyError,
    PersistenceError,
    QualityRejectedError,
    ValidationError,
)
from faceattend.matcher import FaceMatcher
from faceattend.models import AppSettings, AppState, Match, QualityVerdict
from tests.fakes import (
    FakeVideoSource,
    InMemoryRepository,
    ScriptedExtractor,
    StubAdvisor,
    frame,
    identity,
    vec,
)


def _workflow(identities=(), extractor=None, advisor=None, camera=None, fail_open=True, duplicate_distance=0.0):
    state = AppState(identities=list(identities), settings=AppSettings(threshold=0.5, quality_gate_fail_open=fail_open))
    matcher = FaceMatcher()
    matcher.rebuild(state.identities, state.settings.threshold)
    workflow = EnrollmentWorkflow(
        state=state,
        repository=InMemoryRepository(),
        matcher=matcher,
        extractor=extractor or ScriptedExtractor(default=vec(1.0, 1.0)),
        camera=camera or FakeVideoSource(),
        advisor=advisor,
        duplicate_distance=duplicate_distance,
    )
    return workflow


def test_enroll_persists_and_rebuilds_gallery():
    workflow = _workflow(identities=[identity("S1", 0.0, 0.0, name="Alice")])

    enrolled = asyncio.run(workflow.enroll(" S2 ", " Bob ", frame(), course="Math101"))

    assert enrolled.identity_id == "S2"
    assert enrolled.display_name == "Bob"
    assert enrolled.course == "Math101"
    assert enrolled.photo.startswith("data:image/jpeg;base64,")
    assert [rec.identity_id for rec in workflow.state.identities] == ["S1", "S2"]
    assert "S2" in workflow.repository.identities
    assert workflow.matcher.identity_ids == ("S1", "S2")

    result = workflow.matcher.find_best_match(vec(1.0, 1.1))
    assert isinstance(result, Match)
    assert result.identity_id == "S2"


def test_scenario_e_no_face_leaves_state_unchanged():
    workflow = _workflow(identities=[identity("S1", 0.0, 0.0)], extractor=ScriptedExtractor(default=None))

    with pytest.raises(NoFaceDetectedError):
        asyncio.run(workflow.enroll("S2", "Bob", frame()))

    assert len(workflow.state.identities) == 1
    assert workflow.matcher.identity_ids == ("S1",)
    assert workflow.repository.calls == []


@pytest.mark.parametrize("identity_id,name", [("", "Bob"), ("S2", "   "), (None, "Bob")])
def test_enroll_requires_id_and_name(identity_id, name):
    extractor = ScriptedExtractor(default=vec(1.0, 1.0))
    workflow = _workflow(extractor=extractor)

    with pytest.raises(ValidationError):
        asyncio.run(workflow.enroll(identity_id, name, frame()))
    assert extractor.calls == 0


def test_duplicate_identity_key_is_rejected_before_extraction():
    extractor = ScriptedExtractor(default=vec(1.0, 1.0))
    workflow = _workflow(identities=[identity("S1", 0.0, 0.0)], extractor=extractor)

    with pytest.raises(DuplicateIdentityError):
        asyncio.run(workflow.enroll("S1", "Someone Else", frame()))
    assert extractor.calls == 0
    assert len(workflow.state.identities) == 1


def test_enroll_needs_loaded_models():
    workflow = _workflow(extractor=ScriptedExtractor(ready=False))
    with pytest.raises(NotReadyError):
        asyncio.run(workflow.enroll("S1", "Alice", frame()))


def test_embedding_dimension_must_match_gallery():
    workflow = _workflow(identities=[identity("S1", 0.0, 0.0)], extractor=ScriptedExtractor(default=vec(1.0, 1.0, 1.0)))

    with pytest.raises(DimensionMismatchError):
        asyncio.run(workflow.enroll("S2", "Bob", frame()))
    assert workflow.repository.calls == []


def test_quality_rejection_blocks_enrollment():
    advisor = StubAdvisor(verdict=QualityVerdict(accepted=False, reason="face is blurry"))
    workflow = _workflow(advisor=advisor)

    with pytest.raises(QualityRejectedError) as excinfo:
        asyncio.run(workflow.enroll("S1", "Alice", frame()))
    assert excinfo.value.reason == "face is blurry"
    assert workflow.state.identities == []
    assert advisor.calls == 1


def test_advisor_failure_accepts_photo_when_fail_open():
    advisor = StubAdvisor(error=AdvisorError("timeout"))
    workflow = _workflow(advisor=advisor, fail_open=True)

    enrolled = asyncio.run(workflow.enroll("S1", "Alice", frame()))
    assert enrolled.identity_id == "S1"


def test_advisor_failure_rejects_photo_when_fail_closed():
    advisor = StubAdvisor(error=AdvisorError("timeout"))
    workflow = _workflow(advisor=advisor, fail_open=False)

    with pytest.raises(QualityRejectedError):
        asyncio.run(workflow.enroll("S1", "Alice", frame()))
    assert workflow.state.identities == []


def test_persistence_failure_keeps_memory_and_gallery_intact():
    workflow = _workflow(identities=[identity("S1", 0.0, 0.0)])
    workflow.repository.fail_on.add("save_identity")

    with pytest.raises(PersistenceError):
        asyncio.run(workflow.enroll("S2", "Bob", frame()))
    assert [rec.identity_id for rec in workflow.state.identities] == ["S1"]
    assert workflow.matcher.identity_ids == ("S1",)


def test_same_face_under_new_id_is_rejected_when_guard_enabled():
    workflow = _workflow(
        identities=[identity("S1", 1.0, 1.0, name="Alice")],
        extractor=ScriptedExtractor(default=vec(1.05, 1.0)),
        duplicate_distance=0.2,
    )

    with pytest.raises(DuplicateIdentityError, match="Alice"):
        asyncio.run(workflow.enroll("S9", "Mallory", frame()))


def test_remove_rebuilds_gallery_and_is_idempotent():
    workflow = _workflow(identities=[identity("S1", 0.0, 0.0), identity("S2", 1.0, 1.0)])
    workflow.repository.identities = {rec.identity_id: rec for rec in workflow.state.identities}

    asyncio.run(workflow.remove("S1"))
    assert [rec.identity_id for rec in workflow.state.identities] == ["S2"]
    assert workflow.matcher.identity_ids == ("S2",)
    assert "S1" not in workflow.repository.identities

    asyncio.run(workflow.remove("S1"))
    assert workflow.repository.calls.count("delete_identity") == 1

    asyncio.run(workflow.remove("S2"))
    assert not workflow.matcher.has_gallery


def test_capture_requires_a_live_frame():
    camera = FakeVideoSource(frames=[None, frame(7)])
    workflow = _workflow(camera=camera)

    async def scenario():
        with pytest.raises(CameraNotReadyError):
            await workflow.capture()
        await workflow.open_camera(0)
        with pytest.raises(CameraNotReadyError):
            await workflow.capture()
        captured = await workflow.capture()
        await workflow.close_camera()
        return captured

    captured = asyncio.run(scenario())
    assert int(captured[0, 0, 0]) == 7
    assert camera.stop_calls == 1


def test_open_camera_failure_raises_camera_error():
    workflow = _workflow(camera=FakeVideoSource(start_ok=False))
    with pytest.raises(CameraError):
        asyncio.run(workflow.open_camera(3))


def test_photo_thumbnail_skips_non_image_input():
    assert photo_thumbnail(vec(1.0, 2.0)) == ""
    assert photo_thumbnail(frame(10)).startswith("data:image/jpeg;base64,")


def test_concurrent_enrollments_of_one_id_keep_it_unique():
    workflow = _workflow()

    async def scenario():
        return await asyncio.gather(
            workflow.enroll("S1", "Alice", frame()),
            workflow.enroll("S1", "Alice", frame()),
            return_exceptions=True,
        )

    results = asyncio.run(scenario())
    assert sum(isinstance(result, DuplicateIdentityError) for result in results) == 1
    assert [rec.identity_id for rec in workflow.state.identities] == ["S1"]
    assert workflow.matcher.identity_ids == ("S1",)
    assert workflow.repository.calls.count("save_identity") == 1


def test_concurrent_removals_delete_once():
    workflow = _workflow(identities=[identity("S1", 0.0, 0.0), identity("S2", 1.0, 1.0)])

    async def scenario():
        await asyncio.gather(workflow.remove("S1"), workflow.remove("S1"))

    asyncio.run(scenario())
    assert workflow.repository.calls.count("delete_identity") == 1
    assert [rec.identity_id for rec in workflow.state.identities] == ["S2"]
