"""
Tests for the /members endpoints.

Tests cover:
- Create with validation (400) and duplicate phone (409)
- List ordering and search
- Get/update/delete with 404s
- Per-member message history
"""

import pytest

from polaris_crm.storage import SessionLocal, create_message


def add_member(client, first_name="Awa", last_name="Ndiaye", phone="+221 77 123 45 67") -> dict:
    response = client.post(
        "/members",
        json={"first_name": first_name, "last_name": last_name, "phone": phone},
    )
    assert response.status_code == 201, response.text
    return response.json()


class TestCreateMember:
    """Test POST /members."""

    def test_create_success(self, client):
        """A valid member is stored with a digits-only phone."""
        data = add_member(client)

        assert data["id"] > 0
        assert data["first_name"] == "Awa"
        assert data["last_name"] == "Ndiaye"
        assert data["phone"] == "221771234567"
        assert data["created_at"].endswith("Z")

    def test_names_are_trimmed(self, client):
        data = add_member(client, first_name="  Awa ", last_name=" Ndiaye  ")

        assert (data["first_name"], data["last_name"]) == ("Awa", "Ndiaye")

    @pytest.mark.parametrize("missing", ["first_name", "last_name", "phone"])
    def test_missing_field(self, client, missing):
        """Each required field missing is a 400."""
        body = {"first_name": "Awa", "last_name": "Ndiaye", "phone": "221771234567"}
        del body[missing]

        response = client.post("/members", json=body)

        assert response.status_code == 400
        data = response.json()
        assert data["code"] == 400
        assert data["error"] == "Bad Request"
        assert missing in data["message"]

    def test_blank_field(self, client):
        response = client.post(
            "/members", json={"first_name": "   ", "last_name": "Ndiaye", "phone": "221771234567"}
        )

        assert response.status_code == 400
        assert "first_name is required" in response.json()["message"]

    @pytest.mark.parametrize("phone", ["12345678", "1234567890123456", "call me"])
    def test_phone_length_out_of_range(self, client, phone):
        """Canonical phone must have 9 to 15 digits."""
        response = client.post(
            "/members", json={"first_name": "Awa", "last_name": "Ndiaye", "phone": phone}
        )

        assert response.status_code == 400

    @pytest.mark.parametrize("phone", ["123456789", "123456789012345"])
    def test_phone_length_bounds_accepted(self, client, phone):
        add_member(client, phone=phone)

    def test_duplicate_phone_conflict(self, client):
        """Same number in another format is a 409."""
        add_member(client, phone="221771234567")

        response = client.post(
            "/members",
            json={"first_name": "Other", "last_name": "Person", "phone": "+221 77 123 45 67"},
        )

        assert response.status_code == 409
        assert response.json()["error"] == "Conflict"

    def test_invalid_json_body(self, client):
        response = client.post(
            "/members", content="{oops", headers={"Content-Type": "application/json"}
        )

        assert response.status_code == 400


class TestListAndSearch:
    """Test GET /members and GET /members/search."""

    def test_empty(self, client):
        response = client.get("/members")

        assert response.status_code == 200
        assert response.json() == []

    def test_ordered_by_last_then_first_name(self, client):
        add_member(client, "Moussa", "Sow", "221770000001")
        add_member(client, "Awa", "Ndiaye", "221770000002")
        add_member(client, "Fatou", "Diop", "221770000003")
        add_member(client, "Binta", "Ndiaye", "221770000004")

        names = [(m["first_name"], m["last_name"]) for m in client.get("/members").json()]

        assert names == [("Fatou", "Diop"), ("Awa", "Ndiaye"), ("Binta", "Ndiaye"), ("Moussa", "Sow")]

    def test_search_by_name_case_insensitive(self, client):
        add_member(client, "Awa", "Ndiaye", "221770000001")
        add_member(client, "Moussa", "Sow", "221770000002")

        results = client.get("/members/search", params={"q": "ndia"}).json()

        assert [m["first_name"] for m in results] == ["Awa"]

    def test_search_by_phone(self, client):
        add_member(client, "Awa", "Ndiaye", "221770000001")
        add_member(client, "Moussa", "Sow", "33612345678")

        results = client.get("/members/search", params={"q": "3361"}).json()

        assert [m["first_name"] for m in results] == ["Moussa"]

    def test_empty_query_lists_all(self, client):
        add_member(client, "Awa", "Ndiaye", "221770000001")
        add_member(client, "Moussa", "Sow", "221770000002")

        assert len(client.get("/members/search", params={"q": ""}).json()) == 2


class TestMemberById:
    """Test GET/PUT/DELETE /members/{id}."""

    def test_get(self, client):
        created = add_member(client)

        response = client.get(f"/members/{created['id']}")

        assert response.status_code == 200
        assert response.json() == created

    def test_get_not_found(self, client):
        response = client.get("/members/999")

        assert response.status_code == 404
        assert response.json() == {"error": "Not Found", "message": "Member 999 not found", "code": 404}

    def test_non_integer_id(self, client):
        assert client.get("/members/abc").status_code == 400

    def test_update_partial(self, client):
        created = add_member(client)

        response = client.put(f"/members/{created['id']}", json={"last_name": "Sow"})

        assert response.status_code == 200
        data = response.json()
        assert data["last_name"] == "Sow"
        assert data["first_name"] == "Awa"
        assert data["phone"] == "221771234567"

    def test_update_phone_canonicalized(self, client):
        created = add_member(client)

        response = client.put(f"/members/{created['id']}", json={"phone": "+33 6 12 34 56 78"})

        assert response.json()["phone"] == "33612345678"

    def test_update_nothing(self, client):
        created = add_member(client)

        response = client.put(f"/members/{created['id']}", json={})

        assert response.status_code == 400

    def test_update_phone_conflict(self, client):
        add_member(client, "Awa", "Ndiaye", "221770000001")
        other = add_member(client, "Moussa", "Sow", "221770000002")

        response = client.put(f"/members/{other['id']}", json={"phone": "221770000001"})

        assert response.status_code == 409

    def test_update_own_phone_is_not_conflict(self, client):
        created = add_member(client, phone="221770000001")

        response = client.put(f"/members/{created['id']}", json={"phone": "+221 77 000 00 01"})

        assert response.status_code == 200

    def test_update_not_found(self, client):
        assert client.put("/members/999", json={"last_name": "Sow"}).status_code == 404

    def test_delete(self, client):
        created = add_member(client)

        response = client.delete(f"/members/{created['id']}")

        assert response.status_code == 200
        assert response.json() == {"message": "Member deleted"}
        assert client.get(f"/members/{created['id']}").status_code == 404

    def test_delete_not_found(self, client):
        assert client.delete("/members/999").status_code == 404


class TestMemberMessages:
    """Test GET /members/{id}/messages."""

    def test_newest_first(self, client):
        created = add_member(client)
        with SessionLocal() as db:
            create_message(db, created["id"], "inbound_conversation", "Hi", status="read")
            create_message(db, created["id"], "outbound_conversation", "Hello!", status="sent")

        response = client.get(f"/members/{created['id']}/messages")

        assert response.status_code == 200
        assert [m["content"] for m in response.json()] == ["Hello!", "Hi"]

    def test_unknown_member(self, client):
        assert client.get("/members/999/messages").status_code == 404

    def test_limit_bounds(self, client):
        created = add_member(client)

        assert client.get(f"/members/{created['id']}/messages", params={"limit": 101}).status_code == 400
