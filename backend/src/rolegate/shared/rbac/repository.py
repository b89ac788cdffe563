"""DynamoDB single-table implementation of the RBAC store."""

import logging
from typing import Any, Dict, Iterable, List, Optional, Tuple

import boto3
from botocore.exceptions import ClientError

from rolegate.shared.errors import StoreError

from .models import (
    Menu,
    MenuPermission,
    Permission,
    Role,
    RolePermission,
    User,
    UserRole,
)
from .store import (
    MENU,
    MENU_PERMISSION,
    PERMISSION,
    ROLE,
    ROLE_PERMISSION,
    USER,
    USER_ROLE,
    RbacStore,
    WriteOp,
)

logger = logging.getLogger(__name__)

# TransactWriteItems hard limit
MAX_TRANSACTION_ITEMS = 100

INVERSE_INDEX = "InverseLookupIndex"


class DynamoDBRbacStore(RbacStore):
    """
    RBAC store backed by a single DynamoDB table.

    Item layout:
    - USER#<id> / PROFILE                     user
    - USER#<id> / ROLE#<rid>                  user -> role (GSI1: ROLE#<rid> / USER#<id>)
    - ROLE#<id> / DEFINITION                  role
    - ROLE#<id> / PERMISSION#<pid>            role -> permission (GSI1: PERMISSION#<pid> / ROLE#<id>)
    - ROLE#<id> / MENU#<mid>                  menu flags (GSI1: MENU#<mid> / ROLE#<id>)
    - PERMISSION#<id> / DEFINITION            permission
    - MENU#<id> / DEFINITION                  menu
    - ROLE_NAME#<name> / LOCK                 unique role name
    - PERMISSION_NAME#<name> / LOCK           unique permission name
    """

    def __init__(
        self,
        table_name: str,
        region: Optional[str] = None,
        profile: Optional[str] = None,
    ):
        """
        Initialize DynamoDB store.

        Args:
            table_name: DynamoDB table name
            region: AWS region
            profile: Optional AWS profile name
        """
        self.table_name = table_name
        self.region = region

        if profile:
            session = boto3.Session(profile_name=profile)
            self._dynamodb = session.resource("dynamodb", region_name=region)
        else:
            self._dynamodb = boto3.resource("dynamodb", region_name=region)

        self._table = self._dynamodb.Table(self.table_name)

        logger.info(f"Initialized DynamoDB RBAC store: table={self.table_name}, region={self.region}")

    # =========================================================================
    # Low-level helpers
    # =========================================================================

    def _get_item(self, pk: str, sk: str) -> Optional[Dict[str, Any]]:
        try:
            response = self._table.get_item(Key={"PK": pk, "SK": sk})
            return response.get("Item")
        except ClientError as e:
            logger.error(f"Error getting item {pk}/{sk}: {e}")
            raise

    def _query(self, pk: str, sk_prefix: str, index: Optional[str] = None) -> List[Dict[str, Any]]:
        pk_attr, sk_attr = ("GSI1PK", "GSI1SK") if index else ("PK", "SK")
        kwargs: Dict[str, Any] = {
            "KeyConditionExpression": f"{pk_attr} = :pk AND begins_with({sk_attr}, :sk)",
            "ExpressionAttributeValues": {":pk": pk, ":sk": sk_prefix},
        }
        if index:
            kwargs["IndexName"] = index

        try:
            response = self._table.query(**kwargs)
            items = response.get("Items", [])

            # Handle pagination
            while "LastEvaluatedKey" in response:
                response = self._table.query(
                    ExclusiveStartKey=response["LastEvaluatedKey"], **kwargs
                )
                items.extend(response.get("Items", []))

            return items
        except ClientError as e:
            logger.error(f"Error querying {pk} {sk_prefix}: {e}")
            raise

    def _scan_entities(self, entity_type: str) -> List[Dict[str, Any]]:
        kwargs = {
            "FilterExpression": "entityType = :type",
            "ExpressionAttributeValues": {":type": entity_type},
        }
        try:
            response = self._table.scan(**kwargs)
            items = response.get("Items", [])

            while "LastEvaluatedKey" in response:
                response = self._table.scan(
                    ExclusiveStartKey=response["LastEvaluatedKey"], **kwargs
                )
                items.extend(response.get("Items", []))

            return items
        except ClientError as e:
            logger.error(f"Error scanning {entity_type} items: {e}")
            raise

    # =========================================================================
    # Item keys
    # =========================================================================

    @staticmethod
    def _item_key(entity: str, key: Tuple[str, ...]) -> Dict[str, Any]:
        """Primary key plus inverse-index key for an entity."""
        if entity == USER:
            return {"PK": f"USER#{key[0]}", "SK": "PROFILE"}
        if entity == ROLE:
            return {"PK": f"ROLE#{key[0]}", "SK": "DEFINITION"}
        if entity == PERMISSION:
            return {"PK": f"PERMISSION#{key[0]}", "SK": "DEFINITION"}
        if entity == MENU:
            return {"PK": f"MENU#{key[0]}", "SK": "DEFINITION"}
        if entity == USER_ROLE:
            user_id, role_id = key
            return {
                "PK": f"USER#{user_id}", "SK": f"ROLE#{role_id}",
                "GSI1PK": f"ROLE#{role_id}", "GSI1SK": f"USER#{user_id}",
            }
        if entity == ROLE_PERMISSION:
            role_id, permission_id = key
            return {
                "PK": f"ROLE#{role_id}", "SK": f"PERMISSION#{permission_id}",
                "GSI1PK": f"PERMISSION#{permission_id}", "GSI1SK": f"ROLE#{role_id}",
            }
        if entity == MENU_PERMISSION:
            menu_id, role_id = key
            return {
                "PK": f"ROLE#{role_id}", "SK": f"MENU#{menu_id}",
                "GSI1PK": f"MENU#{menu_id}", "GSI1SK": f"ROLE#{role_id}",
            }
        raise StoreError(f"Unknown entity kind: {entity}")

    @staticmethod
    def _name_lock_key(entity: str, name: str) -> Dict[str, str]:
        prefix = "ROLE_NAME" if entity == ROLE else "PERMISSION_NAME"
        return {"PK": f"{prefix}#{name}", "SK": "LOCK"}

    # =========================================================================
    # Transactions
    # =========================================================================

    def _build_transact_items(self, operations: List[WriteOp]) -> List[Dict]:
        """
        Build TransactWriteItem dicts for the staged operations.

        A transaction may touch each item once, so only the last operation
        per key is kept. Role and permission writes also maintain the name
        lock items that enforce unique names.
        """
        latest: Dict[Tuple[str, Tuple[str, ...]], WriteOp] = {}
        for op in operations:
            latest[(op.entity, op.key)] = op

        items: List[Dict] = []
        for op in latest.values():
            key = self._item_key(op.entity, op.key)
            primary = {"PK": key["PK"], "SK": key["SK"]}

            if op.is_delete:
                items.append({"Delete": {"TableName": self.table_name, "Key": primary}})
            else:
                item = {**key, "entityType": op.entity, **op.value.to_dict()}
                items.append({"Put": {"TableName": self.table_name, "Item": item}})

            if op.entity in (ROLE, PERMISSION):
                items.extend(self._name_lock_items(op, primary))

        return items

    def _name_lock_items(self, op: WriteOp, primary: Dict[str, str]) -> List[Dict]:
        existing = self._get_item(primary["PK"], primary["SK"])
        old_name = existing.get("name") if existing else None
        items: List[Dict] = []

        if op.is_delete:
            if old_name:
                items.append({"Delete": {
                    "TableName": self.table_name,
                    "Key": self._name_lock_key(op.entity, old_name),
                }})
            return items

        new_name = op.value.name
        if old_name and old_name != new_name:
            items.append({"Delete": {
                "TableName": self.table_name,
                "Key": self._name_lock_key(op.entity, old_name),
            }})
        if old_name != new_name:
            items.append({"Put": {
                "TableName": self.table_name,
                "Item": {
                    **self._name_lock_key(op.entity, new_name),
                    "entityType": f"{op.entity}_name",
                    "ownerId": op.key[0],
                },
                "ConditionExpression": "attribute_not_exists(PK)",
            }})
        return items

    async def _commit(self, operations: List[WriteOp]) -> None:
        transact_items = self._build_transact_items(operations)

        if len(transact_items) > MAX_TRANSACTION_ITEMS:
            raise StoreError(
                f"Transaction has {len(transact_items)} items; "
                f"DynamoDB allows at most {MAX_TRANSACTION_ITEMS}"
            )

        try:
            self._dynamodb.meta.client.transact_write_items(
                TransactItems=transact_items
            )
            logger.debug(f"Committed transaction with {len(transact_items)} items")
        except ClientError as e:
            if e.response["Error"]["Code"] == "TransactionCanceledException":
                logger.warning(f"RBAC transaction cancelled: {e}")
                raise StoreError(f"Transaction cancelled: {e}") from e
            logger.error(f"Error committing RBAC transaction: {e}")
            raise StoreError(f"Transaction failed: {e}") from e

    # =========================================================================
    # Users
    # =========================================================================

    async def get_user(self, user_id: str) -> Optional[User]:
        item = self._get_item(f"USER#{user_id}", "PROFILE")
        return User.from_dict(item) if item else None

    async def list_users(self) -> List[User]:
        users = [User.from_dict(item) for item in self._scan_entities(USER)]
        users.sort(key=lambda u: u.user_id)
        return users

    async def list_user_role_links(self, user_id: str) -> List[UserRole]:
        links = [
            UserRole.from_dict(item)
            for item in self._query(f"USER#{user_id}", "ROLE#")
        ]
        links.sort(key=lambda link: link.assigned_at)
        return links

    # =========================================================================
    # Roles
    # =========================================================================

    async def get_role(self, role_id: str) -> Optional[Role]:
        item = self._get_item(f"ROLE#{role_id}", "DEFINITION")
        return Role.from_dict(item) if item else None

    async def get_role_by_name(self, name: str) -> Optional[Role]:
        lock = self._get_item(**self._lookup_args(ROLE, name))
        if not lock:
            return None
        return await self.get_role(lock["ownerId"])

    async def list_roles(self) -> List[Role]:
        roles = [Role.from_dict(item) for item in self._scan_entities(ROLE)]
        roles.sort(key=lambda r: r.name)
        return roles

    async def list_role_user_ids(self, role_id: str) -> List[str]:
        items = self._query(f"ROLE#{role_id}", "USER#", index=INVERSE_INDEX)
        return [item["userId"] for item in items]

    async def list_role_permission_links(self, role_id: str) -> List[RolePermission]:
        return [
            RolePermission.from_dict(item)
            for item in self._query(f"ROLE#{role_id}", "PERMISSION#")
        ]

    # =========================================================================
    # Permissions
    # =========================================================================

    async def get_permission(self, permission_id: str) -> Optional[Permission]:
        item = self._get_item(f"PERMISSION#{permission_id}", "DEFINITION")
        return Permission.from_dict(item) if item else None

    async def get_permission_by_name(self, name: str) -> Optional[Permission]:
        lock = self._get_item(**self._lookup_args(PERMISSION, name))
        if not lock:
            return None
        return await self.get_permission(lock["ownerId"])

    async def find_permissions_by_ids(self, permission_ids: Iterable[str]) -> List[Permission]:
        ids = list(dict.fromkeys(permission_ids))
        if not ids:
            return []

        found: Dict[str, Permission] = {}
        # BatchGetItem accepts at most 100 keys per request
        for start in range(0, len(ids), 100):
            chunk = ids[start:start + 100]
            request = {
                self.table_name: {
                    "Keys": [{"PK": f"PERMISSION#{pid}", "SK": "DEFINITION"} for pid in chunk]
                }
            }
            try:
                while request:
                    response = self._dynamodb.batch_get_item(RequestItems=request)
                    for item in response.get("Responses", {}).get(self.table_name, []):
                        permission = Permission.from_dict(item)
                        found[permission.permission_id] = permission
                    request = response.get("UnprocessedKeys") or None
            except ClientError as e:
                logger.error(f"Error batch-getting permissions: {e}")
                raise

        return [found[pid] for pid in ids if pid in found]

    async def list_permissions(self) -> List[Permission]:
        permissions = [Permission.from_dict(item) for item in self._scan_entities(PERMISSION)]
        permissions.sort(key=lambda p: p.name)
        return permissions

    async def list_permission_role_ids(self, permission_id: str) -> List[str]:
        items = self._query(f"PERMISSION#{permission_id}", "ROLE#", index=INVERSE_INDEX)
        return [item["roleId"] for item in items]

    # =========================================================================
    # Menus
    # =========================================================================

    async def get_menu(self, menu_id: str) -> Optional[Menu]:
        item = self._get_item(f"MENU#{menu_id}", "DEFINITION")
        return Menu.from_dict(item) if item else None

    async def list_menus(self) -> List[Menu]:
        return [Menu.from_dict(item) for item in self._scan_entities(MENU)]

    async def find_menu_permissions(
        self,
        role_ids: Optional[Iterable[str]] = None,
        menu_ids: Optional[Iterable[str]] = None,
        can_view: Optional[bool] = None,
    ) -> List[MenuPermission]:
        if role_ids is not None:
            items = []
            for role_id in dict.fromkeys(role_ids):
                items.extend(self._query(f"ROLE#{role_id}", "MENU#"))
        elif menu_ids is not None:
            items = []
            for menu_id in dict.fromkeys(menu_ids):
                items.extend(self._query(f"MENU#{menu_id}", "ROLE#", index=INVERSE_INDEX))
        else:
            items = self._scan_entities(MENU_PERMISSION)

        records = [MenuPermission.from_dict(item) for item in items]

        if role_ids is not None and menu_ids is not None:
            menu_set = set(menu_ids)
            records = [r for r in records if r.menu_id in menu_set]
        if can_view is not None:
            records = [r for r in records if r.can_view == can_view]
        return records

    async def get_menu_permission(self, menu_id: str, role_id: str) -> Optional[MenuPermission]:
        item = self._get_item(f"ROLE#{role_id}", f"MENU#{menu_id}")
        return MenuPermission.from_dict(item) if item else None

    def _lookup_args(self, entity: str, name: str) -> Dict[str, str]:
        key = self._name_lock_key(entity, name)
        return {"pk": key["PK"], "sk": key["SK"]}
