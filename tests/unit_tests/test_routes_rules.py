"""Test suite for transformation rule API endpoints."""

import pytest
from fastapi import status

from tests.consts import ACTOR
from tests.consts import API_BASE
from tests.consts import PROVIDER_ID
from tests.consts import TENANT_ID

PAIR_PARAMS = {"tenant_id": TENANT_ID, "provider_id": PROVIDER_ID}


@pytest.fixture
def sales_rule_body():
    return {
        "tenant_id": TENANT_ID,
        "provider_id": PROVIDER_ID,
        "name": "Sales reps",
        "rule_type": "REGEX",
        "source_pattern": "^Sales-(.*)$",
        "target_mapping": "Sales_${1}_Rep",
        "priority": 5,
    }


@pytest.fixture
def sales_rule(client, sales_rule_body):
    """The sales rule, created through the API."""
    return client.post(f"{API_BASE}/rules", json=sales_rule_body).json()["Rule"]


class TestRuleManagement:
    """Tests for rule create, read, update and delete."""

    def test_create_rule(self, client, sales_rule_body, audit_trail):
        response = client.post(f"{API_BASE}/rules", json=sales_rule_body)

        assert response.status_code == status.HTTP_201_CREATED
        data = response.json()
        assert data["Message"] == "Rule created"
        assert data["Rule"]["target_mapping"] == "Sales_${1}_Rep"
        assert data["Rule"]["enabled"] is True
        assert audit_trail.find(operation="TransformationRuleCreated")[0].actor == ACTOR

    def test_create_invalid_regex(self, client, sales_rule_body):
        sales_rule_body["source_pattern"] = "^Sales-(.*$"

        response = client.post(f"{API_BASE}/rules", json=sales_rule_body)

        assert response.status_code == status.HTTP_400_BAD_REQUEST
        data = response.json()
        assert data["error_code"] == "RULE_VALIDATION_ERROR"
        assert data["errors"][0].startswith("Invalid regex pattern")

    def test_create_unknown_rule_type(self, client, sales_rule_body):
        sales_rule_body["rule_type"] = "FUZZY"

        response = client.post(f"{API_BASE}/rules", json=sales_rule_body)

        assert response.status_code == status.HTTP_422_UNPROCESSABLE_CONTENT

    def test_list_rules_highest_priority_first(self, client, sales_rule, sales_rule_body):
        client.post(
            f"{API_BASE}/rules",
            json={**sales_rule_body, "name": "Admins", "rule_type": "EXACT", "source_pattern": "Admins",
                  "target_mapping": "OrgAdmin", "priority": 50},
        )

        response = client.get(f"{API_BASE}/rules", params=PAIR_PARAMS)

        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["Count"] == 2
        assert [rule["name"] for rule in data["Rules"]] == ["Admins", "Sales reps"]

    def test_list_rules_requires_pair(self, client):
        response = client.get(f"{API_BASE}/rules", params={"tenant_id": TENANT_ID})

        assert response.status_code == status.HTTP_422_UNPROCESSABLE_CONTENT

    def test_get_rule(self, client, sales_rule):
        response = client.get(f"{API_BASE}/rules/{sales_rule['id']}")

        assert response.status_code == status.HTTP_200_OK
        assert response.json()["Rule"]["id"] == sales_rule["id"]

    def test_get_rule_not_found(self, client):
        response = client.get(f"{API_BASE}/rules/missing")

        assert response.status_code == status.HTTP_404_NOT_FOUND
        assert response.json()["error_code"] == "RULE_NOT_FOUND"

    def test_update_rule(self, client, sales_rule, sales_rule_body):
        response = client.put(
            f"{API_BASE}/rules/{sales_rule['id']}",
            json={**sales_rule_body, "target_mapping": "Seller_${1}"},
        )

        assert response.status_code == status.HTTP_200_OK
        rule = response.json()["Rule"]
        assert rule["id"] == sales_rule["id"]
        assert rule["target_mapping"] == "Seller_${1}"
        assert rule["created_at"] == sales_rule["created_at"]

        preview = client.post(f"{API_BASE}/rules/preview", json={**PAIR_PARAMS, "group_names": ["Sales-APAC"]})
        assert preview.json()["Preview"]["Sales-APAC"]["entitlements"][0]["name"] == "Seller_APAC"

    def test_update_rule_not_found(self, client, sales_rule_body):
        response = client.put(f"{API_BASE}/rules/missing", json=sales_rule_body)

        assert response.status_code == status.HTTP_404_NOT_FOUND

    def test_delete_rule(self, client, sales_rule, audit_trail):
        response = client.delete(f"{API_BASE}/rules/{sales_rule['id']}")

        assert response.status_code == status.HTTP_204_NO_CONTENT
        assert client.get(f"{API_BASE}/rules/{sales_rule['id']}").status_code == status.HTTP_404_NOT_FOUND
        assert len(audit_trail.find(operation="TransformationRuleDeleted")) == 1


class TestRuleValidationAndTesting:
    """Tests for validating and testing rules without applying them."""

    def test_validate_valid_rule(self, client, sales_rule_body):
        response = client.post(f"{API_BASE}/rules/validate", json=sales_rule_body)

        assert response.status_code == status.HTTP_200_OK
        assert response.json() == {"IsValid": True, "Errors": [], "Warnings": []}

    def test_validate_does_not_save(self, client, sales_rule_body):
        client.post(f"{API_BASE}/rules/validate", json=sales_rule_body)

        assert client.get(f"{API_BASE}/rules", params=PAIR_PARAMS).json()["Count"] == 0

    def test_validate_invalid_rule(self, client, sales_rule_body):
        sales_rule_body["source_pattern"] = ""

        response = client.post(f"{API_BASE}/rules/validate", json=sales_rule_body)

        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["IsValid"] is False
        assert "source_pattern is required" in data["Errors"]

    def test_rule_examples(self, client, sales_rule):
        response = client.post(
            f"{API_BASE}/rules/{sales_rule['id']}/test",
            json={
                "examples": [
                    {"group_name": "Sales-APAC", "expected": ["Sales_APAC_Rep"]},
                    {"group_name": "Marketing", "expected": []},
                ]
            },
        )

        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["Message"] == "All examples passed"
        assert data["Result"]["passed"] is True
        assert [item["actual"] for item in data["Result"]["results"]] == [["Sales_APAC_Rep"], []]

    def test_rule_examples_failing(self, client, sales_rule):
        response = client.post(
            f"{API_BASE}/rules/{sales_rule['id']}/test",
            json={"examples": [{"group_name": "Sales-APAC", "expected": ["Sales_EMEA_Rep"]}]},
        )

        data = response.json()
        assert data["Message"] == "Some examples failed"
        assert data["Result"]["results"][0]["passed"] is False

    def test_rule_examples_required(self, client, sales_rule):
        response = client.post(f"{API_BASE}/rules/{sales_rule['id']}/test", json={"examples": []})

        assert response.status_code == status.HTTP_422_UNPROCESSABLE_CONTENT


class TestPreviewAndReverse:
    """Tests for preview and reverse transformation."""

    def test_preview(self, client, sales_rule):
        response = client.post(
            f"{API_BASE}/rules/preview",
            json={**PAIR_PARAMS, "group_names": ["Sales-APAC", "Marketing"]},
        )

        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["Message"] == "Previewed 2 groups"
        assert [e["name"] for e in data["Preview"]["Sales-APAC"]["entitlements"]] == ["Sales_APAC_Rep"]
        assert data["Preview"]["Marketing"]["entitlements"] == []

    def test_reverse_single_candidate(self, client, sales_rule):
        response = client.get(f"{API_BASE}/rules/reverse", params={**PAIR_PARAMS, "entitlement": "Sales_EMEA_Rep"})

        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["GroupName"] == "Sales-EMEA"
        assert data["Result"]["ambiguous"] is False

    def test_reverse_ambiguous_lists_candidates(self, client, sales_rule_body):
        for group_name, priority in (("Finance", 1), ("Accounting", 9)):
            client.post(
                f"{API_BASE}/rules",
                json={**sales_rule_body, "rule_type": "EXACT", "source_pattern": group_name,
                      "target_mapping": "Shared", "priority": priority},
            )

        response = client.get(f"{API_BASE}/rules/reverse", params={**PAIR_PARAMS, "entitlement": "Shared"})

        data = response.json()
        assert data["Message"] == "Ambiguous reverse mapping"
        assert data["GroupName"] is None
        assert [c["group_name"] for c in data["Result"]["candidates"]] == ["Accounting", "Finance"]

    def test_reverse_unknown_entitlement(self, client, sales_rule):
        response = client.get(f"{API_BASE}/rules/reverse", params={**PAIR_PARAMS, "entitlement": "Nothing"})

        data = response.json()
        assert data["Message"] == "Found 0 candidates"
        assert data["GroupName"] is None
