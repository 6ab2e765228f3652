"""
3-wayマージエンジンのテスト
"""

import json

from conftest import ext

from user_data_sync.core.models import ExtensionIdentifier, SyncExtension
from user_data_sync.layers.sync_layer.extensions_merge import (compare, format_extensions, merge, parse_extensions,
                                                               sort_extensions)


def ids(items):
    return sorted(item.id if isinstance(item, ExtensionIdentifier) else item.identifier.id for item in items)


class TestFirstSync:
    """リモート未作成時"""

    def test_local_becomes_remote(self):
        local = [ext("pub.a", installed=True), ext("pub.b", disabled=True, installed=True)]

        result = merge(local, None, None, [], [])

        assert not result.has_local_changed
        assert result.has_remote_changed
        assert ids(result.remote) == ["pub.a", "pub.b"]

    def test_ignored_extensions_are_not_uploaded(self):
        local = [ext("pub.a", installed=True), ext("Pub.Secret", installed=True)]

        result = merge(local, None, None, [], ["pub.secret"])

        assert ids(result.remote) == ["pub.a"]

    def test_empty_local_writes_empty_remote(self):
        result = merge([], None, None, [], [])

        assert result.remote == []
        assert result.has_remote_changed


class TestThreeWayMerge:
    """ローカル・リモート・最終同期の3-wayマージ"""

    def test_in_sync_has_no_changes(self):
        items = [ext("pub.a", installed=True)]

        result = merge(items, list(items), list(items), [], [])

        assert not result.has_local_changed
        assert not result.has_remote_changed

    def test_remote_addition_is_installed_locally(self):
        base = [ext("pub.a", installed=True)]
        remote = [ext("pub.a", installed=True), ext("pub.b", installed=True)]

        result = merge(base, remote, base, [], [])

        assert ids(result.added) == ["pub.b"]
        assert result.removed == []
        assert result.remote is None

    def test_remote_addition_not_marked_installed_is_ignored(self):
        base = [ext("pub.a", installed=True)]
        remote = [*base, ext("pub.builtin", disabled=True)]

        result = merge(base, remote, base, [], [])

        assert result.added == []

    def test_remote_removal_uninstalls_locally(self):
        base = [ext("pub.a", installed=True), ext("pub.b", installed=True)]
        remote = [ext("pub.a", installed=True)]

        result = merge(base, remote, base, [], [])

        assert ids(result.removed) == ["pub.b"]
        assert result.remote is None

    def test_local_addition_goes_to_remote(self):
        base = [ext("pub.a", installed=True)]
        local = [*base, ext("pub.c", installed=True)]

        result = merge(local, base, base, [], [])

        assert not result.has_local_changed
        assert ids(result.remote) == ["pub.a", "pub.c"]

    def test_local_removal_goes_to_remote(self):
        base = [ext("pub.a", installed=True), ext("pub.b", installed=True)]
        local = [ext("pub.a", installed=True)]

        result = merge(local, base, base, [], [])

        assert ids(result.remote) == ["pub.a"]

    def test_removing_last_extension_writes_empty_remote(self):
        base = [ext("pub.a", installed=True)]

        result = merge([], base, base, [], [])

        assert result.remote == []
        assert result.has_remote_changed

    def test_local_disable_goes_to_remote(self):
        base = [ext("pub.a", installed=True)]
        local = [ext("pub.a", disabled=True, installed=True)]

        result = merge(local, base, base, [], [])

        assert result.remote[0].disabled is True
        assert not result.has_local_changed

    def test_remote_wins_when_both_changed(self):
        base = [ext("pub.a", installed=True)]
        local = [ext("pub.a", disabled=True, installed=True)]
        remote = [ext("pub.a", version="2.0.0", installed=True)]

        result = merge(local, remote, base, [], [])

        assert len(result.updated) == 1
        assert result.updated[0].version == "2.0.0"
        assert result.updated[0].disabled is False

    def test_skipped_local_absence_does_not_remove_from_remote(self):
        base = [ext("pub.a", installed=True), ext("pub.b", installed=True)]
        local = [ext("pub.a", installed=True)]

        result = merge(local, base, base, [ext("pub.b", installed=True)], [])

        assert result.remote is None

    def test_ignored_extensions_are_not_touched(self):
        base = [ext("pub.a", installed=True)]
        remote = [*base, ext("pub.ignored", installed=True)]

        result = merge(base, remote, base, [], ["PUB.IGNORED"])

        assert result.added == []
        assert result.remote is None

    def test_identity_by_uuid(self):
        local = [SyncExtension(ExtensionIdentifier("old.name", uuid="u-1"), installed=True)]
        remote = [SyncExtension(ExtensionIdentifier("new.name", uuid="u-1"), installed=True)]

        result = merge(local, remote, list(local), [], [])

        assert not result.has_local_changed
        assert result.remote is None

    def test_local_installed_flag_is_kept_in_remote(self):
        base = [ext("pub.a", installed=True), ext("pub.b")]
        local = [ext("pub.a", installed=True), ext("pub.b", disabled=True, installed=True)]

        result = merge(local, base, base, [], [])

        remote = {e.identifier.id: e for e in result.remote}
        assert remote["pub.b"].installed is True
        assert remote["pub.b"].disabled is True


class TestCompare:
    def test_compare_reports_added_removed_updated(self):
        from_map = {"id:a": ext("a"), "id:b": ext("b")}
        to_map = {"id:b": ext("b", disabled=True), "id:c": ext("c")}

        changes = compare(from_map, to_map, set())

        assert changes.added == {"id:c"}
        assert changes.removed == {"id:a"}
        assert changes.updated == {"id:b"}

    def test_installed_only_compared_when_requested(self):
        from_map = {"id:a": ext("a")}
        to_map = {"id:a": ext("a", installed=True)}

        assert compare(from_map, to_map, set()).is_empty()
        assert compare(from_map, to_map, set(), check_installed=True).updated == {"id:a"}


class TestFormatting:
    def test_sort_puts_extensions_without_uuid_first(self):
        items = [
            SyncExtension(ExtensionIdentifier("a.first", uuid="u-1")),
            SyncExtension(ExtensionIdentifier("z.last")),
            SyncExtension(ExtensionIdentifier("b.second")),
        ]

        assert [e.identifier.id for e in sort_extensions(items)] == ["b.second", "z.last", "a.first"]

    def test_format_is_order_independent(self):
        items = [ext("pub.b", installed=True), ext("pub.a", disabled=True)]

        assert format_extensions(items) == format_extensions(list(reversed(items)))

    def test_format_omits_default_fields(self):
        content = format_extensions([ext("pub.a")])

        assert json.loads(content) == [{"identifier": {"id": "pub.a"}}]

    def test_parse_formatted_content(self):
        items = [ext("pub.a", version="1.2.3", disabled=True, installed=True)]

        assert parse_extensions(format_extensions(items, pretty=True)) == items
