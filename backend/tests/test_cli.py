import pytest

from provisioner import cli
from provisioner.models.provisioning import DependencyKind, DependencyState


def _args(*argv):
    return cli.build_parser().parse_args(list(argv))


@pytest.mark.asyncio
async def test_check_exits_non_zero_when_not_ready(service, capsys):
    code = await cli.run(_args("check"), service)

    assert code == cli.EXIT_FAILED
    assert "Python was not detected" in capsys.readouterr().out


@pytest.mark.asyncio
async def test_install_package(service, fake_probe, capsys):
    fake_probe.states[DependencyKind.INTERPRETER] = DependencyState.INSTALLED

    code = await cli.run(_args("install", "package"), service)

    assert code == cli.EXIT_OK
    assert "package installed" in capsys.readouterr().out
    assert service.state_of(DependencyKind.PACKAGE) == DependencyState.INSTALLED


@pytest.mark.asyncio
async def test_install_already_installed_is_a_no_op(service, fake_probe, fake_installers):
    fake_probe.states[DependencyKind.INTERPRETER] = DependencyState.INSTALLED

    code = await cli.run(_args("install", "interpreter"), service)

    assert code == cli.EXIT_OK
    assert fake_installers[DependencyKind.INTERPRETER].calls == 0


@pytest.mark.asyncio
async def test_install_refused_without_interpreter(service, capsys):
    code = await cli.run(_args("install", "model"), service)

    assert code == cli.EXIT_REFUSED
    assert "PREREQUISITE_MISSING" in capsys.readouterr().out


@pytest.mark.asyncio
async def test_failed_install_points_to_guide(service, fake_probe, fake_installers, capsys):
    fake_probe.states[DependencyKind.INTERPRETER] = DependencyState.INSTALLED
    fake_installers[DependencyKind.PACKAGE].verify = False

    code = await cli.run(_args("install", "package"), service)

    assert code == cli.EXIT_FAILED
    assert "VERIFICATION_MISMATCH" in capsys.readouterr().out


@pytest.mark.asyncio
async def test_remove_model(service, fake_probe, fake_installers):
    fake_probe.states[DependencyKind.INTERPRETER] = DependencyState.INSTALLED
    fake_probe.states[DependencyKind.MODEL] = DependencyState.INSTALLED

    code = await cli.run(_args("remove", "model"), service)

    assert code == cli.EXIT_OK
    assert fake_installers[DependencyKind.MODEL].uninstalled == 1


def test_interpreter_cannot_be_removed_from_the_command_line():
    with pytest.raises(SystemExit):
        _args("remove", "interpreter")


@pytest.mark.asyncio
async def test_guide_lists_urls(service, capsys):
    code = await cli.run(_args("guide", "package"), service)

    assert code == cli.EXIT_OK
    assert service.settings.PACKAGE_GUIDE_URL in capsys.readouterr().out
