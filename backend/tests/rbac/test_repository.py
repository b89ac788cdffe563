"""Tests for the DynamoDB store with boto3 mocked out."""

from decimal import Decimal
from unittest.mock import MagicMock, patch

import pytest
from botocore.exceptions import ClientError

from rolegate.shared.errors import StoreError
from rolegate.shared.rbac.models import Menu, MenuPermission, Permission, Role
from rolegate.shared.rbac.repository import INVERSE_INDEX, MAX_TRANSACTION_ITEMS, DynamoDBRbacStore


@pytest.fixture
def dynamodb():
    with patch("rolegate.shared.rbac.repository.boto3") as mock_boto3:
        resource = MagicMock()
        resource.Table.return_value.get_item.return_value = {}
        mock_boto3.resource.return_value = resource
        yield resource


@pytest.fixture
def repo(dynamodb) -> DynamoDBRbacStore:
    return DynamoDBRbacStore(table_name="rbac-test", region="us-west-2")


def _transact_items(dynamodb):
    return dynamodb.meta.client.transact_write_items.call_args.kwargs["TransactItems"]


async def test_put_role_writes_item_and_name_lock(repo, dynamodb) -> None:
    async with repo.transaction() as uow:
        uow.put_role(Role(role_id="r1", name="reporter"))

    items = _transact_items(dynamodb)
    role_item = items[0]["Put"]["Item"]
    assert (role_item["PK"], role_item["SK"]) == ("ROLE#r1", "DEFINITION")
    assert role_item["entityType"] == "role"
    assert role_item["name"] == "reporter"

    lock = items[1]["Put"]
    assert lock["Item"]["PK"] == "ROLE_NAME#reporter"
    assert lock["Item"]["ownerId"] == "r1"
    assert lock["ConditionExpression"] == "attribute_not_exists(PK)"


async def test_rename_swaps_name_lock(repo, dynamodb) -> None:
    dynamodb.Table.return_value.get_item.return_value = {"Item": {"name": "old"}}

    async with repo.transaction() as uow:
        uow.put_permission(Permission(permission_id="p1", name="report:read"))

    items = _transact_items(dynamodb)
    assert items[1] == {
        "Delete": {"TableName": "rbac-test", "Key": {"PK": "PERMISSION_NAME#old", "SK": "LOCK"}}
    }
    assert items[2]["Put"]["Item"]["PK"] == "PERMISSION_NAME#report:read"


async def test_menu_permission_carries_inverse_keys(repo, dynamodb) -> None:
    async with repo.transaction() as uow:
        uow.put_menu_permission(MenuPermission("M1", "r1", can_view=True))
        uow.delete_menu("M9")

    put, delete = _transact_items(dynamodb)
    assert put["Put"]["Item"]["GSI1PK"] == "MENU#M1"
    assert put["Put"]["Item"]["SK"] == "MENU#M1"
    assert delete["Delete"]["Key"] == {"PK": "MENU#M9", "SK": "DEFINITION"}


async def test_last_write_per_key_wins(repo, dynamodb) -> None:
    async with repo.transaction() as uow:
        uow.put_menu(Menu(menu_id="M1", title="First"))
        uow.put_menu(Menu(menu_id="M1", title="Second"))

    items = _transact_items(dynamodb)
    assert len(items) == 1
    assert items[0]["Put"]["Item"]["title"] == "Second"


async def test_oversized_transaction_is_refused(repo, dynamodb) -> None:
    with pytest.raises(StoreError):
        async with repo.transaction() as uow:
            for i in range(MAX_TRANSACTION_ITEMS + 1):
                uow.delete_menu(f"M{i}")

    dynamodb.meta.client.transact_write_items.assert_not_called()


async def test_cancelled_transaction_becomes_store_error(repo, dynamodb) -> None:
    dynamodb.meta.client.transact_write_items.side_effect = ClientError(
        {"Error": {"Code": "TransactionCanceledException", "Message": "conditional check failed"}},
        "TransactWriteItems",
    )

    with pytest.raises(StoreError):
        async with repo.transaction() as uow:
            uow.put_role(Role(role_id="r1", name="taken"))


async def test_role_user_ids_use_inverse_index(repo, dynamodb) -> None:
    table = dynamodb.Table.return_value
    table.query.side_effect = [
        {"Items": [{"userId": "u1"}], "LastEvaluatedKey": {"PK": "x"}},
        {"Items": [{"userId": "u2"}]},
    ]

    user_ids = await repo.list_role_user_ids("r1")

    assert user_ids == ["u1", "u2"]
    first_call = table.query.call_args_list[0].kwargs
    assert first_call["IndexName"] == INVERSE_INDEX
    assert first_call["ExpressionAttributeValues"] == {":pk": "ROLE#r1", ":sk": "USER#"}


async def test_get_role_by_name_follows_lock(repo, dynamodb) -> None:
    table = dynamodb.Table.return_value
    table.get_item.side_effect = [
        {"Item": {"PK": "ROLE_NAME#reporter", "SK": "LOCK", "ownerId": "r1"}},
        {"Item": {"roleId": "r1", "name": "reporter", "isSystem": False}},
    ]

    role = await repo.get_role_by_name("reporter")

    assert role.role_id == "r1"
    assert table.get_item.call_args_list[0].kwargs["Key"] == {"PK": "ROLE_NAME#reporter", "SK": "LOCK"}


async def test_menu_order_index_decimal_is_converted(repo, dynamodb) -> None:
    dynamodb.Table.return_value.scan.return_value = {
        "Items": [{"menuId": "M1", "title": "Reports", "orderIndex": Decimal("3")}]
    }

    menus = await repo.list_menus()

    assert menus[0].order_index == 3


async def test_list_users_scans_every_page(repo, dynamodb) -> None:
    table = dynamodb.Table.return_value
    table.scan.side_effect = [
        {"Items": [{"userId": "u2", "isActive": False}], "LastEvaluatedKey": {"PK": "USER#u2"}},
        {"Items": [{"userId": "u1", "isSuperuser": True}]},
    ]

    users = await repo.list_users()

    assert [u.user_id for u in users] == ["u1", "u2"]
    assert users[0].is_superuser and users[0].is_active
    assert users[1].is_active is False
    assert table.scan.call_args.kwargs["ExclusiveStartKey"] == {"PK": "USER#u2"}


async def test_find_permissions_by_ids_keeps_request_order(repo, dynamodb) -> None:
    dynamodb.batch_get_item.return_value = {
        "Responses": {
            "rbac-test": [
                {"permissionId": "p2", "name": "report:write"},
                {"permissionId": "p1", "name": "report:read"},
            ]
        }
    }

    permissions = await repo.find_permissions_by_ids(["p1", "p2", "p1", "missing"])

    assert [p.permission_id for p in permissions] == ["p1", "p2"]
    dynamodb.batch_get_item.assert_called_once()
