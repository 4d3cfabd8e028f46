import allure
from click.testing import CliRunner

from agent_jobs import __version__
from agent_jobs.main import agent_jobs

pytestmark = [
    allure.epic("Job Engine"),
    allure.feature("CLI"),
]


def test_version():
    assert __version__


def test_version_option():
    runner = CliRunner()
    result = runner.invoke(agent_jobs, ["--version"])
    assert result.exit_code == 0
    assert __version__ in result.output
