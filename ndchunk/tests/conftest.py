import pytest

from ndchunk.config import config


@pytest.fixture(params=[1, 4])
def max_workers(request):
    """Run a test both sequentially and on the shared thread pool."""
    with config.set({"threading.max_workers": request.param}):
        yield request.param
