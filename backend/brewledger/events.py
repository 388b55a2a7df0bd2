"""Ledger payloads for the inventory, production and staff flows."""
from typing import Union

from .schemas import ActionData, ActionKind


def _format_amount(value: Union[int, float]) -> str:
    # 25.0 -> "25", 12345.67 -> "12345.67"; never rounded or exponent form
    if float(value).is_integer():
        return str(int(value))
    return repr(float(value))


def inventory_change(item_name: str, change: Union[int, float], reason: str, user: str) -> ActionData:
    if change > 0:
        action = ActionKind.INVENTORY_IN
    elif change < 0:
        action = ActionKind.INVENTORY_OUT
    else:
        action = ActionKind.ADJUSTMENT
    sign = '+' if change > 0 else ''
    return ActionData(action=action, details=f"{item_name}: {sign}{_format_amount(change)} ({reason})", user=user)


def new_item(name: str, user: str) -> ActionData:
    return ActionData(action=ActionKind.NEW_ITEM, details=f"Added: {name}", user=user)


def delete_item(name: str, user: str) -> ActionData:
    return ActionData(action=ActionKind.DELETE_ITEM, details=f"Removed item: {name}", user=user)


def production(recipe_name: str, amount: Union[int, float], user: str, unit: str = 'l') -> ActionData:
    return ActionData(action=ActionKind.PRODUCTION, details=f"Brewed {_format_amount(amount)}{unit} {recipe_name}", user=user)


def employee_added(username: str, role: str, user: str) -> ActionData:
    return ActionData(action=ActionKind.EMPLOYEE_ADD, details=f"Added employee: {username} ({role})", user=user)


def employee_removed(username: str, user: str) -> ActionData:
    return ActionData(action=ActionKind.EMPLOYEE_REMOVE, details=f"Removed employee: {username}", user=user)
