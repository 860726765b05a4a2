"""
Tag normalization: canonical shared rows, created lazily and never duplicated.
"""
import threading


class TestCreateTags:
    """create_tags turns raw names into canonical tag rows."""

    def test_empty_input_returns_empty_without_writes(self, datastore):
        assert datastore.create_tags([]) == []
        assert datastore.create_tags(["", "   "]) == []
        assert datastore.list_tags() == []

    def test_creates_missing_tags(self, datastore):
        tags = datastore.create_tags(["python", "sqlite"])

        assert sorted(tag["name"] for tag in tags) == ["python", "sqlite"]
        assert all(isinstance(tag["id"], int) for tag in tags)

    def test_duplicate_names_collapse(self, datastore):
        tags = datastore.create_tags(["a", "a", " a ", "b"])

        assert sorted(tag["name"] for tag in tags) == ["a", "b"]
        assert len(datastore.list_tags()) == 2

    def test_second_call_returns_same_identifiers(self, datastore):
        first = {tag["name"]: tag["id"] for tag in datastore.create_tags(["a", "b"])}
        second = {tag["name"]: tag["id"] for tag in datastore.create_tags(["b", "a"])}

        assert first == second
        assert len(datastore.list_tags()) == 2

    def test_returns_existing_and_new_together(self, datastore):
        existing = datastore.create_tags(["old"])[0]

        tags = datastore.create_tags(["old", "new"])

        by_name = {tag["name"]: tag["id"] for tag in tags}
        assert by_name["old"] == existing["id"]
        assert "new" in by_name

    def test_concurrent_callers_share_rows(self, datastore):
        names = [f"tag-{i}" for i in range(10)]
        results = []
        errors = []

        def worker(offset):
            try:
                results.append(datastore.create_tags(names[offset:] + names[:offset]))
            except Exception as exc:
                errors.append(exc)

        threads = [threading.Thread(target=worker, args=(i,)) for i in range(5)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert errors == []
        catalogue = datastore.list_tags()
        assert len(catalogue) == 10
        expected = {tag["name"]: tag["id"] for tag in catalogue}
        for tags in results:
            assert {tag["name"]: tag["id"] for tag in tags} == expected


class TestListTags:
    """list_tags returns the whole catalogue in id order."""

    def test_lists_in_creation_order(self, datastore):
        datastore.create_tags(["zebra"])
        datastore.create_tags(["apple"])

        assert [tag["name"] for tag in datastore.list_tags()] == ["zebra", "apple"]
