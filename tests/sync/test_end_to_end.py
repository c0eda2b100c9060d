"""End-to-end sync over HTTP.

Runs the reference server on a real werkzeug server thread and syncs two
devices through HttpSyncApi and RemoteImageClient.
"""

from __future__ import annotations

import socket
import threading
from typing import Generator, Tuple

import pytest
from werkzeug.serving import make_server

from recipesync.core.image_client import RemoteImageClient
from recipesync.core.models import Recipe, RecipeImage, SyncStatus
from recipesync.core.sync_client import HttpSyncApi
from recipesync.core.sync_server import RemoteState, create_sync_server

from tests.conftest import TEST_USER
from tests.helpers import make_jpeg

TOKEN = "test-token"


@pytest.fixture
def live_server() -> Generator[Tuple[str, RemoteState], None, None]:
    """Serve a fresh reference server on a free local port."""
    state = RemoteState()
    server = make_server("127.0.0.1", 0, create_sync_server(state, auth_token=TOKEN), threaded=True)
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    yield f"http://127.0.0.1:{server.server_port}", state
    server.shutdown()
    thread.join(timeout=5)


def http_device(make_device, name: str, url: str, token: str = TOKEN):
    return make_device(
        name,
        api=HttpSyncApi(url, token, timeout=5),
        images=RemoteImageClient(url, token, timeout=5),
    )


def free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


class TestEndToEnd:
    def test_two_devices(self, live_server, make_device) -> None:
        url, state = live_server
        laptop = http_device(make_device, "laptop", url)
        phone = http_device(make_device, "phone", url)

        recipe = laptop.book.create_recipe(TEST_USER, "Soup", servings=2, rating=4.5)
        laptop.book.replace_ingredients(recipe, [{"amount": 1.5, "unit": "l", "name": "stock"}])
        laptop.book.tag_recipe(recipe, laptop.book.create_tag(TEST_USER, "quick"))
        laptop.book.set_image(recipe, make_jpeg(1200, 900))

        pushed = laptop.sync()
        assert pushed.success, pushed.errors
        assert pushed.pushed == 5
        assert state.get_image(recipe.sync_id) is not None

        pulled = phone.sync()
        assert pulled.success, pulled.errors
        assert pulled.pulled == 5

        copy = phone.store.find_by_sync_id(Recipe, recipe.sync_id, TEST_USER)
        assert copy.name == "Soup"
        assert copy.rating == 4.5
        [ingredient] = phone.book.ingredients_of(copy)
        assert ingredient.amount == 1.5
        assert [t.name for t in phone.book.tags_of(copy)] == ["quick"]
        image = phone.book.image_of(copy)
        assert image.has_image
        assert phone.pipeline.read_image(recipe.sync_id) is not None

        phone.book.update_recipe(copy, servings=6)
        assert phone.sync().success
        assert laptop.sync().success
        assert laptop.store.get(Recipe, recipe.id).servings == 6

    def test_wrong_token(self, live_server, make_device) -> None:
        url, state = live_server
        device = http_device(make_device, "laptop", url, token="wrong")
        recipe = device.book.create_recipe(TEST_USER, "Soup")

        result = device.sync()

        assert result.success is False
        assert any("401" in e for e in result.errors)
        assert device.store.get(Recipe, recipe.id).sync_status == SyncStatus.PENDING
        assert state.records(TEST_USER) == []

    def test_unreachable_server(self, make_device) -> None:
        device = http_device(make_device, "laptop", f"http://127.0.0.1:{free_port()}")
        recipe = device.book.create_recipe(TEST_USER, "Soup")
        device.book.set_image(recipe, make_jpeg())

        result = device.sync()

        assert result.success is False
        assert device.store.get(Recipe, recipe.id).sync_status == SyncStatus.PENDING
        assert device.store.pending(RecipeImage, TEST_USER)
