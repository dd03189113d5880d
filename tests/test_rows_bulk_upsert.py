"""
Tests for `RowService.bulk_upsert`, including the paginated fetch of
existing rows.
"""

import pytest

from nocodb_rest import ConflictError, NotFoundError, ValidationError
from nocodb_rest.rows import UpsertOptions
from tests.conftest import BASE_ID, TABLE_ID, FakeNocoDB


def test_splits_rows_into_create_and_update(make_service):
    client = FakeNocoDB(rows=[{"Id": 1, "Email": "a@x.com"}])
    result = make_service(client).bulk_upsert(
        TABLE_ID, [{"Email": "a@x.com"}, {"Email": "new@x.com"}], "Email", BASE_ID
    )

    mutations = client.mutations()
    assert len(mutations) == 2
    post, patch = mutations
    assert post.method == "POST" and post.body == [{"Email": "new@x.com"}]
    assert patch.method == "PATCH" and patch.body == [{"Email": "a@x.com", "Id": 1}]
    assert result == {"created": [{"Id": 2}], "updated": [{"Id": 1}]}


def test_only_updates_omits_created(make_service):
    client = FakeNocoDB(rows=[{"Id": 1, "Email": "a@x.com"}])
    result = make_service(client).bulk_upsert(TABLE_ID, [{"Email": "a@x.com", "Name": "A"}], "Email", BASE_ID)
    assert list(result) == ["updated"]
    assert [c.method for c in client.mutations()] == ["PATCH"]


def test_rows_without_match_value_are_created(make_service):
    # no schema for the records path, so a null Email passes validation
    client = FakeNocoDB(rows=[{"Id": 1, "Email": "a@x.com"}], swagger={"paths": {}})
    result = make_service(client).bulk_upsert(
        TABLE_ID, [{"Name": "no email"}, {"Email": None, "Name": "null"}], "Email", BASE_ID
    )
    assert list(result) == ["created"]
    assert client.mutations()[0].body == [{"Name": "no email"}, {"Email": None, "Name": "null"}]


def test_empty_input_makes_no_writes(make_service):
    client = FakeNocoDB()
    assert make_service(client).bulk_upsert(TABLE_ID, [], "Email", BASE_ID) == {}
    assert client.mutations() == []


def test_ambiguous_match_fails_before_writes(make_service):
    client = FakeNocoDB(rows=[{"Id": 1, "Email": "a@x.com"}, {"Id": 2, "Email": "a@x.com"}])
    with pytest.raises(ValidationError, match="Multiple rows matched 'Email=a@x.com'"):
        make_service(client).bulk_upsert(
            TABLE_ID, [{"Email": "b@x.com"}, {"Email": "a@x.com"}], "Email", BASE_ID
        )
    assert client.mutations() == []


def test_create_only_with_existing_match(make_service):
    client = FakeNocoDB(rows=[{"Id": 1, "Email": "a@x.com"}])
    with pytest.raises(ConflictError, match="Email=a@x.com"):
        make_service(client).bulk_upsert(
            TABLE_ID, [{"Email": "a@x.com"}], "Email", BASE_ID, UpsertOptions(create_only=True)
        )
    assert client.mutations() == []


def test_update_only_without_match(make_service):
    client = FakeNocoDB(rows=[{"Id": 1, "Email": "a@x.com"}])
    with pytest.raises(NotFoundError, match="Email=b@x.com"):
        make_service(client).bulk_upsert(
            TABLE_ID, [{"Email": "b@x.com"}], "Email", BASE_ID, UpsertOptions(update_only=True)
        )


def test_update_only_with_missing_match_field(make_service):
    client = FakeNocoDB()
    with pytest.raises(ValidationError, match="missing match field 'Email'"):
        make_service(client).bulk_upsert(
            TABLE_ID, [{"Name": "x"}], "Email", BASE_ID, UpsertOptions(update_only=True)
        )


def test_conflicting_flags_and_bad_input_fail_before_network(make_service):
    client = FakeNocoDB()
    service = make_service(client)
    with pytest.raises(ValidationError):
        service.bulk_upsert(
            TABLE_ID, [], "Email", BASE_ID, UpsertOptions(create_only=True, update_only=True)
        )
    with pytest.raises(ValidationError, match="expects an array of row objects"):
        service.bulk_upsert(TABLE_ID, {"Email": "a@x.com"}, "Email", BASE_ID)
    with pytest.raises(ValidationError, match="expects an array of row objects"):
        service.bulk_upsert(TABLE_ID, ["a@x.com"], "Email", BASE_ID)
    assert client.calls == []
    assert client.swagger_fetches == 0


def test_incoming_rows_validated_up_front(make_service):
    client = FakeNocoDB()
    with pytest.raises(ValidationError, match="does not match schema"):
        make_service(client).bulk_upsert(TABLE_ID, [{"Email": 1}], "Email", BASE_ID)
    assert client.calls == []


def test_identity_conflict_in_update_bucket(make_service):
    client = FakeNocoDB(rows=[{"Id": 1, "Email": "a@x.com"}])
    with pytest.raises(ValidationError, match="does not match record Id"):
        make_service(client).bulk_upsert(TABLE_ID, [{"Id": 2, "Email": "a@x.com"}], "Email", BASE_ID)


def test_whole_float_match_value_updates_integer_row(make_service):
    client = FakeNocoDB(rows=[{"Id": 1, "Code": 10}])
    result = make_service(client).bulk_upsert(TABLE_ID, [{"Code": 10.0, "Name": "ten"}], "Code", BASE_ID)
    assert list(result) == ["updated"]
    assert [c.method for c in client.mutations()] == ["PATCH"]
    assert client.rows == [{"Id": 1, "Code": 10.0, "Name": "ten"}]


class TestPagination:
    def test_single_page(self, make_service):
        client = FakeNocoDB(rows=[{"Id": i, "Email": f"{i}@x.com"} for i in range(1, 4)])
        make_service(client).bulk_upsert(TABLE_ID, [{"Email": "3@x.com"}], "Email", BASE_ID)
        gets = client.calls_to("GET")
        assert [c.query for c in gets] == [{"page": "1", "limit": "1000"}]

    def test_walks_all_pages(self, make_service):
        rows = [{"Id": i, "Email": f"{i}@x.com"} for i in range(1, 2502)]
        client = FakeNocoDB(rows=rows)
        result = make_service(client).bulk_upsert(
            TABLE_ID, [{"Email": "2501@x.com", "Name": "last"}], "Email", BASE_ID
        )
        assert [c.query["page"] for c in client.calls_to("GET")] == ["1", "2", "3"]
        assert client.calls_to("PATCH")[0].body == [{"Email": "2501@x.com", "Name": "last", "Id": 2501}]
        assert list(result) == ["updated"]

    def test_stops_on_empty_page_when_total_is_wrong(self, make_service):
        client = FakeNocoDB(rows=[{"Id": i, "Email": f"{i}@x.com"} for i in range(1, 1001)])
        client.reported_total = 5000
        make_service(client).bulk_upsert(TABLE_ID, [{"Email": "new@x.com"}], "Email", BASE_ID)
        assert [c.query["page"] for c in client.calls_to("GET")] == ["1", "2"]

    def test_extra_query_is_kept_on_every_page(self, make_service):
        client = FakeNocoDB(rows=[{"Id": i, "Email": f"{i}@x.com"} for i in range(1, 1202)])
        make_service(client).bulk_upsert(
            TABLE_ID,
            [{"Email": "new@x.com"}],
            "Email",
            BASE_ID,
            UpsertOptions(query={"where": "(Active,eq,true)"}),
        )
        for call in client.calls_to("GET"):
            assert call.query["where"] == "(Active,eq,true)"
        assert client.calls_to("POST")[0].query is None
