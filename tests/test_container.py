"""Tests for the container lifecycle manager.

All runtime interaction goes through the in-memory FakeRuntime.
"""

import logging
import os
import stat

import pytest

from conftest import FakeRunner, FakeRuntime
from gpu_devbox.console import ScriptedConfirmer
from gpu_devbox.container import ContainerManager
from gpu_devbox.errors import (
    ArchiveMissing,
    BuildFailed,
    ContainerMissing,
    DefinitionMissing,
    ImageNotBuilt,
    LoadFailed,
    NoImageAvailable,
    PrerequisiteMissing,
    SaveFailed,
    StartFailed,
    StopFailed,
)
from gpu_devbox.runtime import ContainerState


def make_manager(project, mode, runtime=None, answers=None, runner=None, environ=None):
    sleeps = []
    mgr = ContainerManager(
        project,
        mode,
        runtime=runtime or FakeRuntime(),
        confirmer=ScriptedConfirmer(answers),
        runner=runner or FakeRunner(),
        sleep=sleeps.append,
        environ=environ if environ is not None else {},
    )
    mgr.sleeps = sleeps
    return mgr


# ---------------------------------------------------------------------------
# build / save / load
# ---------------------------------------------------------------------------


def test_build_requires_dockerfile(project, rootless_mode, tmp_path):
    project = project.model_copy(update={"definition_path": tmp_path / "missing" / "Dockerfile"})
    mgr = make_manager(project, rootless_mode)

    with pytest.raises(DefinitionMissing):
        mgr.build_image()
    assert mgr.runtime.calls == []


def test_build_passes_fixed_user_mapping(project, rootless_mode, monkeypatch):
    monkeypatch.setenv("USER", "someone-else")
    monkeypatch.setenv("UID", "1000")
    mgr = make_manager(project, rootless_mode)

    mgr.build_image()

    op, dockerfile, context, tag, buildargs = mgr.runtime.calls[0]
    assert op == "build"
    assert dockerfile == project.dockerfile
    assert context == project.context_dir
    assert tag == "ubuntu:22041311"
    assert buildargs == {"USERNAME": "urays", "USER_UID": "42752", "USER_GID": "42752"}
    assert mgr.image_exists()


def test_build_failure_is_reported(project, rootless_mode):
    runtime = FakeRuntime()
    runtime.fail.add("build")
    mgr = make_manager(project, rootless_mode, runtime=runtime)

    with pytest.raises(BuildFailed):
        mgr.build_image()


def test_save_requires_image(project, rootless_mode):
    mgr = make_manager(project, rootless_mode, runtime=FakeRuntime(images=[]))

    with pytest.raises(ImageNotBuilt):
        mgr.save_image()
    assert not project.archive_path.exists()


def test_save_writes_world_writable_archive(project, rootless_mode):
    mgr = make_manager(project, rootless_mode, runtime=FakeRuntime(images=[project.image_name]))

    mgr.save_image()

    archive = project.archive_path
    assert archive.is_file()
    assert stat.S_IMODE(archive.stat().st_mode) == 0o777


def test_save_privileged_shares_archive_through_sudo(project, privileged_mode, monkeypatch):
    def refuse_chmod(path, mode):
        raise PermissionError(1, "Operation not permitted")

    # The archive belongs to root after a privileged save.
    monkeypatch.setattr("gpu_devbox.container.os.chmod", refuse_chmod)
    runner = FakeRunner()
    mgr = make_manager(project, privileged_mode, runtime=FakeRuntime(images=[project.image_name]), runner=runner)

    mgr.save_image()

    assert ["sudo", "chmod", "777", str(project.archive_path)] in runner.commands


def test_save_privileged_chmod_failure(project, privileged_mode):
    runner = FakeRunner(failing=("sudo chmod",))
    mgr = make_manager(project, privileged_mode, runtime=FakeRuntime(images=[project.image_name]), runner=runner)

    with pytest.raises(SaveFailed):
        mgr.save_image()


def test_save_rootless_permission_error_is_reported(project, rootless_mode, monkeypatch):
    def refuse_chmod(path, mode):
        raise PermissionError(1, "Operation not permitted")

    monkeypatch.setattr("gpu_devbox.container.os.chmod", refuse_chmod)
    runner = FakeRunner()
    mgr = make_manager(project, rootless_mode, runtime=FakeRuntime(images=[project.image_name]), runner=runner)

    with pytest.raises(SaveFailed):
        mgr.save_image()
    assert not any("chmod" in cmd for cmd in runner.commands)


def test_save_failure(project, rootless_mode):
    runtime = FakeRuntime(images=[project.image_name])
    runtime.fail.add("save")
    mgr = make_manager(project, rootless_mode, runtime=runtime)

    with pytest.raises(SaveFailed):
        mgr.save_image()


def test_load_requires_archive(project, rootless_mode):
    mgr = make_manager(project, rootless_mode)

    with pytest.raises(ArchiveMissing) as exc_info:
        mgr.load_image()
    assert "build" in exc_info.value.hint


def test_load_from_archive(project, rootless_mode):
    project.archive_path.parent.mkdir(parents=True)
    project.archive_path.write_bytes(b"tar")
    mgr = make_manager(project, rootless_mode)

    mgr.load_image()

    assert mgr.image_exists()


def test_load_failure(project, rootless_mode):
    project.archive_path.parent.mkdir(parents=True)
    project.archive_path.write_bytes(b"tar")
    runtime = FakeRuntime()
    runtime.fail.add("load")
    mgr = make_manager(project, rootless_mode, runtime=runtime)

    with pytest.raises(LoadFailed):
        mgr.load_image()


# ---------------------------------------------------------------------------
# start / enter / stop
# ---------------------------------------------------------------------------


def test_start_is_idempotent(project, rootless_mode):
    runtime = FakeRuntime(images=[project.image_name])
    mgr = make_manager(project, rootless_mode, runtime=runtime)

    mgr.start_container()
    mgr.start_container()

    assert len(runtime.run_specs) == 1
    assert mgr.container_state() is ContainerState.RUNNING


def test_start_stop_start_recreates_same_name(project, rootless_mode):
    runtime = FakeRuntime(images=[project.image_name])
    mgr = make_manager(project, rootless_mode, runtime=runtime, answers=[False])

    mgr.start_container()
    mgr.stop_container()
    assert mgr.container_state() is ContainerState.STOPPED

    mgr.start_container()

    assert mgr.container_state() is ContainerState.RUNNING
    assert [s.name for s in runtime.run_specs] == [project.container_name, project.container_name]
    assert ("remove", project.container_name) in runtime.calls


def test_start_keeps_cache_volumes_across_recreation(project, rootless_mode):
    runtime = FakeRuntime(images=[project.image_name])
    mgr = make_manager(project, rootless_mode, runtime=runtime, answers=[True])

    mgr.start_container()
    mgr.stop_container()
    assert mgr.container_state() is ContainerState.ABSENT
    mgr.start_container()

    assert runtime.volumes == {v.name for v in project.volumes}
    assert not any(call[0] == "remove_volume" for call in runtime.calls)


def test_start_loads_archive_when_image_missing(project, rootless_mode):
    project.archive_path.parent.mkdir(parents=True)
    project.archive_path.write_bytes(b"tar")
    runtime = FakeRuntime(images=[])
    mgr = make_manager(project, rootless_mode, runtime=runtime)

    mgr.start_container()

    assert runtime.calls[0][0] == "load"
    assert mgr.is_container_running()


def test_start_without_image_or_archive(project, rootless_mode):
    runtime = FakeRuntime(images=[])
    mgr = make_manager(project, rootless_mode, runtime=runtime)

    with pytest.raises(NoImageAvailable):
        mgr.start_container()
    assert runtime.run_specs == []


def test_start_creates_workspace(project, rootless_mode):
    mgr = make_manager(project, rootless_mode, runtime=FakeRuntime(images=[project.image_name]))
    assert not project.workspace.exists()

    mgr.start_container()

    assert project.workspace.is_dir()


def test_start_container_definition(project, rootless_mode):
    runtime = FakeRuntime(images=[project.image_name])
    mgr = make_manager(project, rootless_mode, runtime=runtime)

    mgr.start_container()

    spec = runtime.run_specs[0]
    workspace = str(project.workspace.absolute())
    assert spec.user == "42752:42752"
    assert spec.gpus == "all"
    assert spec.network == "host"
    assert spec.shm_size == "32g"
    assert spec.restart_policy == project.restart_policy
    assert spec.security_opt == ["seccomp=unconfined"]
    assert spec.environment["DISPLAY"] == ":0"
    assert spec.environment["HOME"] == "/home/urays"
    assert spec.environment["NVIDIA_VISIBLE_DEVICES"] == "all"
    assert spec.binds == {workspace: f"/home/urays/{os.path.basename(workspace)}"}
    assert [v.name for v in spec.volumes] == [f"{project.container_name}-conda-pkgs", f"{project.container_name}-pip-cache"]


def test_start_passes_display_through(project, rootless_mode):
    runtime = FakeRuntime(images=[project.image_name])
    mgr = make_manager(project, rootless_mode, runtime=runtime, environ={"DISPLAY": ":1"})

    mgr.start_container()

    assert runtime.run_specs[0].environment["DISPLAY"] == ":1"


def test_start_grants_x11_when_xhost_present(project, rootless_mode):
    runner = FakeRunner(available=("docker", "nvidia-smi", "xhost"), failing=("xhost",))
    mgr = make_manager(project, rootless_mode, runtime=FakeRuntime(images=[project.image_name]), runner=runner)

    mgr.start_container()

    assert ["xhost", "+local:docker"] in runner.commands
    assert mgr.is_container_running()


def test_start_failure(project, rootless_mode):
    runtime = FakeRuntime(images=[project.image_name])
    runtime.fail.add("run")
    mgr = make_manager(project, rootless_mode, runtime=runtime)

    with pytest.raises(StartFailed):
        mgr.start_container()


def test_mutating_operations_show_warning_when_privileged(project, privileged_mode, capsys):
    mgr = make_manager(project, privileged_mode, runtime=FakeRuntime(images=[project.image_name]))

    mgr.start_container()
    assert "SECURITY WARNING" in capsys.readouterr().err

    mgr.stop_container()
    assert "SECURITY WARNING" in capsys.readouterr().err

    mgr.enter_shell()
    assert "SECURITY WARNING" in capsys.readouterr().err


def test_no_warning_when_rootless(project, rootless_mode, capsys):
    mgr = make_manager(project, rootless_mode, runtime=FakeRuntime(images=[project.image_name]))

    mgr.start_container()
    mgr.stop_container()

    assert "SECURITY WARNING" not in capsys.readouterr().err


def test_enter_shell_starts_container_and_settles(project, rootless_mode):
    runtime = FakeRuntime(images=[project.image_name])
    mgr = make_manager(project, rootless_mode, runtime=runtime)

    rc = mgr.enter_shell()

    assert rc == 0
    assert mgr.is_container_running()
    assert mgr.sleeps == [project.settle_delay]
    assert runtime.calls[-1] == ("exec", project.container_name, "42752:42752", ["/bin/bash", "-l"])


def test_enter_shell_attaches_to_running_container(project, rootless_mode):
    runtime = FakeRuntime(images=[project.image_name])
    mgr = make_manager(project, rootless_mode, runtime=runtime)
    mgr.start_container()
    runtime.exec_status = 3

    rc = mgr.enter_shell()

    assert rc == 3
    assert mgr.sleeps == []
    assert len(runtime.run_specs) == 1


def test_stop_default_answer_keeps_container(project, rootless_mode):
    runtime = FakeRuntime(images=[project.image_name])
    mgr = make_manager(project, rootless_mode, runtime=runtime, answers=[None])
    mgr.start_container()

    mgr.stop_container()

    assert mgr.container_state() is ContainerState.STOPPED
    assert mgr.confirmer.questions == ["Remove stopped container?"]


def test_stop_and_remove(project, rootless_mode):
    runtime = FakeRuntime(images=[project.image_name])
    mgr = make_manager(project, rootless_mode, runtime=runtime, answers=[True])
    mgr.start_container()

    mgr.stop_container()

    assert mgr.container_state() is ContainerState.ABSENT


def test_stop_when_not_running_is_not_an_error(project, rootless_mode, caplog):
    mgr = make_manager(project, rootless_mode)

    with caplog.at_level(logging.WARNING, logger="gpu_devbox"):
        mgr.stop_container()

    assert "is not running" in caplog.text
    assert not any(call[0] == "stop" for call in mgr.runtime.calls)


def test_stop_failure(project, rootless_mode):
    runtime = FakeRuntime(images=[project.image_name])
    mgr = make_manager(project, rootless_mode, runtime=runtime)
    mgr.start_container()
    runtime.fail.add("stop")

    with pytest.raises(StopFailed):
        mgr.stop_container()


# ---------------------------------------------------------------------------
# clean
# ---------------------------------------------------------------------------


@pytest.fixture
def provisioned(project, rootless_mode):
    """A started container with saved archive and cache volumes."""
    runtime = FakeRuntime(images=[project.image_name])
    mgr = make_manager(project, rootless_mode, runtime=runtime)
    mgr.start_container()
    mgr.save_image()
    return runtime


@pytest.mark.parametrize("answers", [[], [None, None, None], [False, False, False]])
@pytest.mark.parametrize("guards_on", [False, True])
def test_clean_declined_keeps_archive_and_volumes(project, rootless_mode, provisioned, answers, guards_on):
    mgr = make_manager(project, rootless_mode, runtime=provisioned, answers=answers)

    mgr.clean_all(remove_archive=guards_on, remove_volumes=guards_on)

    assert mgr.container_state() is ContainerState.ABSENT
    assert mgr.image_exists()
    assert project.archive_path.is_file()
    assert provisioned.volumes == {v.name for v in project.volumes}


def test_clean_guarded_steps_are_not_offered_by_default(project, rootless_mode, provisioned):
    mgr = make_manager(project, rootless_mode, runtime=provisioned, answers=[True, True, True])

    mgr.clean_all()

    assert mgr.confirmer.questions == [f"Remove Docker image {project.image_name}?"]
    assert not mgr.image_exists()
    assert project.archive_path.is_file()
    assert provisioned.volumes


def test_clean_everything_when_enabled_and_confirmed(project, rootless_mode, provisioned):
    mgr = make_manager(project, rootless_mode, runtime=provisioned, answers=[True, True, True])

    mgr.clean_all(remove_archive=True, remove_volumes=True)

    assert not mgr.image_exists()
    assert not project.archive_path.exists()
    assert provisioned.volumes == set()


def test_clean_is_best_effort(project, rootless_mode, provisioned):
    provisioned.fail.update({"stop", "remove_image"})
    mgr = make_manager(project, rootless_mode, runtime=provisioned, answers=[True])

    mgr.clean_all()

    assert mgr.container_state() is ContainerState.ABSENT


def test_clean_with_nothing_present(project, rootless_mode):
    mgr = make_manager(project, rootless_mode, runtime=FakeRuntime(images=[]))

    mgr.clean_all()

    assert mgr.confirmer.questions == []


# ---------------------------------------------------------------------------
# prerequisites / reporting
# ---------------------------------------------------------------------------


def test_prerequisites_need_docker(project, rootless_mode):
    mgr = make_manager(project, rootless_mode, runner=FakeRunner(available=("nvidia-smi",)))

    with pytest.raises(PrerequisiteMissing):
        mgr.check_prerequisites()


def test_prerequisites_need_nvidia_driver(project, rootless_mode):
    mgr = make_manager(project, rootless_mode, runner=FakeRunner(available=("docker",)))

    with pytest.raises(PrerequisiteMissing):
        mgr.check_prerequisites()


def test_prerequisites_warn_without_nvidia_runtime(project, rootless_mode, caplog):
    runtime = FakeRuntime()
    runtime.info_data = {"Runtimes": {"runc": {}}}
    mgr = make_manager(project, rootless_mode, runtime=runtime)

    with caplog.at_level(logging.INFO, logger="gpu_devbox"):
        mgr.check_prerequisites()

    assert "NVIDIA Docker runtime may not be installed" in caplog.text
    assert "Prerequisites check passed" in caplog.text


def test_show_logs_requires_container(project, rootless_mode):
    mgr = make_manager(project, rootless_mode)

    with pytest.raises(ContainerMissing):
        mgr.show_logs()


def test_show_logs_follows_container(project, rootless_mode):
    runtime = FakeRuntime(images=[project.image_name])
    mgr = make_manager(project, rootless_mode, runtime=runtime)
    mgr.start_container()

    mgr.show_logs()

    assert runtime.calls[-1] == ("logs", project.container_name)


def test_show_status_reports_everything(project, rootless_mode, provisioned, capsys):
    runner = FakeRunner(outputs={"nvidia-smi": "0, NVIDIA RTX 4090, 550.54, 24564, 1024\n"})
    mgr = make_manager(project, rootless_mode, runtime=provisioned, runner=runner)

    mgr.show_status()

    out = capsys.readouterr().out
    assert "Rootless Docker: ACTIVE" in out
    assert "unix:///run/user/1000/docker.sock" in out
    assert f"Container name:  {project.container_name}" in out
    assert str(project.archive_path) in out
    assert f"{project.container_name}-conda-pkgs" in out
    assert "NVIDIA RTX 4090" in out
    assert "1024/24564 MB" in out


def test_show_status_without_anything(project, privileged_mode, capsys):
    mgr = make_manager(project, privileged_mode, runtime=FakeRuntime(images=[]), runner=FakeRunner(available=()))

    mgr.show_status()

    out = capsys.readouterr().out
    assert "System-Level Docker" in out
    assert "No container found." in out
    assert "No image found in Docker." in out
    assert "No saved image file found." in out
    assert "No volumes found." in out
    assert "NVIDIA driver not found." in out
