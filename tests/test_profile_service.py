from __future__ import annotations

from estate_chat.core.settings import get_settings
from estate_chat.models import Conversation
from estate_chat.services import profile_service


def test_resolve_avatar_url_handles_storage_paths():
    settings = get_settings()
    bucket_url = f"{settings.storage_public_url.rstrip('/')}/user_avatars"

    assert profile_service.resolve_avatar_url(None) == settings.default_avatar_path
    assert profile_service.resolve_avatar_url("   ") == settings.default_avatar_path
    assert profile_service.resolve_avatar_url("https://cdn.example.com/a.png") == "https://cdn.example.com/a.png"
    assert profile_service.resolve_avatar_url("alice.png") == f"{bucket_url}/alice.png"
    assert profile_service.resolve_avatar_url("user_avatars/alice.png") == f"{bucket_url}/alice.png"
    assert profile_service.resolve_avatar_url("/public/user_avatars/nested/alice.png") == f"{bucket_url}/nested/alice.png"


def test_collect_counterpart_ids_skips_viewer_and_blanks():
    conversations = [
        Conversation(id="c1", participant_one="alice", participant_two="bob", listing_id="l1"),
        {"participant_one": "alice", "participant_two": "carol"},
        {"participant_one": "", "participant_two": "alice"},
    ]

    assert profile_service.collect_counterpart_ids(conversations, viewer_id="alice") == {"bob", "carol"}


def test_fetch_profiles_by_ids_dedupes_and_ignores_unknown(database, marketplace):
    with database() as db:
        profiles = profile_service.fetch_profiles_by_ids(
            db,
            [marketplace["bob"], f" {marketplace['bob']} ", "missing", ""],
        )
        assert [profile.id for profile in profiles] == [marketplace["bob"]]

        snapshot = profile_service.serialize_profile_snapshot(profiles[0])
        assert snapshot == {
            "id": marketplace["bob"],
            "full_name": "Bob Owner",
            "avatar_url": "https://cdn.example.com/bob.jpg",
        }
