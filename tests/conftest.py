# Fixtures live in cli/test_fixtures.py so they sit next to the code they fake.
from test_fixtures import (  # noqa: F401
    cargo_project,
    fake_config,
    fake_toolchain,
    hermetic_env,
    launcher,
)
