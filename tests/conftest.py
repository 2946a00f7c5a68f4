import os

import pytest


def pytest_addoption(parser: pytest.Parser) -> None:
    parser.addoption(
        '--url',
        action='store',
        default=None,
        help='Live page for the browser probe tests (skipped when not given)',
    )


@pytest.fixture
def live_url(request: pytest.FixtureRequest) -> str:
    # Priority: CLI --url > env DOCQA_TEST_URL, otherwise the test is skipped
    url = request.config.getoption('--url') or os.getenv('DOCQA_TEST_URL')
    if not url:
        pytest.skip('no live URL given, use --url or DOCQA_TEST_URL')
    return url


@pytest.fixture
def sleeps():
    return []
