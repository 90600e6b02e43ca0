import os

import pytest

from rulesim.simulation import SimEnvironment


@pytest.fixture
def cleandir(tmpdir):
    origin = os.getcwd()
    tmpdir.chdir()
    yield None
    os.chdir(origin)


@pytest.fixture
def config():
    return {
        'sim.db.enable': False,
        'sim.db.file': 'sim.sqlite',
        'sim.duration': 10,
        'sim.log.enable': False,
        'sim.log.file': 'sim.log',
        'sim.log.level': 'INFO',
        'sim.result.file': 'result.yaml',
        'sim.seed': 1234,
        'sim.vcd.dump_file': 'sim.vcd',
        'sim.vcd.enable': False,
        'sim.workspace': 'workspace',
    }


@pytest.fixture
def env(config):
    """Fixture providing a SimEnvironment for tests with `env` argument."""
    env = SimEnvironment(config)
    yield env
    env.tracemgr.close()
