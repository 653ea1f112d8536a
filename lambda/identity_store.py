from __future__ import annotations

from typing import Any, Iterator

import boto3


def sdb_client(*, region: str, endpoint: str = "") -> Any:
    kwargs: dict[str, Any] = {"region_name": region}
    if endpoint:
        kwargs["endpoint_url"] = endpoint if "://" in endpoint else f"https://{endpoint}"
    return boto3.client("sdb", **kwargs)


def _quote_name(name: str) -> str:
    return "`" + name.replace("`", "``") + "`"


def _quote_value(value: str) -> str:
    return "'" + value.replace("'", "''") + "'"


def attributes_to_dict(attributes: list[dict[str, Any]] | None) -> dict[str, str]:
    # SimpleDB allows multi-valued attributes; every attribute here is written
    # with Replace=True so the first value is the only one.
    out: dict[str, str] = {}
    for attr in attributes or []:
        name = str(attr.get("Name") or "")
        if name and name not in out:
            out[name] = str(attr.get("Value") or "")
    return out


class IdentityStore:
    """Domain-scoped item/attribute access over a SimpleDB client."""

    def __init__(self, client: Any) -> None:
        self._sdb = client

    def list_domains(self) -> list[str]:
        domains: list[str] = []
        next_token = ""
        while True:
            kwargs: dict[str, Any] = {}
            if next_token:
                kwargs["NextToken"] = next_token
            out = self._sdb.list_domains(**kwargs)
            domains.extend(out.get("DomainNames") or [])
            next_token = str(out.get("NextToken") or "")
            if not next_token:
                return domains

    def ensure_domain(self, domain: str) -> bool:
        """Create the domain unless it already exists. Returns True when created."""

        if domain in self.list_domains():
            return False
        self._sdb.create_domain(DomainName=domain)
        return True

    def put(self, domain: str, item_name: str, attributes: dict[str, str], *, replace: bool = True) -> None:
        self._sdb.put_attributes(
            DomainName=domain,
            ItemName=item_name,
            Attributes=[
                {"Name": name, "Value": value, "Replace": replace}
                for name, value in attributes.items()
            ],
        )

    def get(self, domain: str, item_name: str, *, consistent: bool = True) -> dict[str, str]:
        out = self._sdb.get_attributes(
            DomainName=domain,
            ItemName=item_name,
            ConsistentRead=consistent,
        )
        return attributes_to_dict(out.get("Attributes"))

    def delete(self, domain: str, item_name: str) -> None:
        self._sdb.delete_attributes(DomainName=domain, ItemName=item_name)

    def _select(self, expression: str, *, next_token: str = "") -> Iterator[dict[str, Any]]:
        token = next_token
        while True:
            kwargs: dict[str, Any] = {"SelectExpression": expression, "ConsistentRead": True}
            if token:
                kwargs["NextToken"] = token
            out = self._sdb.select(**kwargs)
            yield from out.get("Items") or []
            token = str(out.get("NextToken") or "")
            if not token:
                return

    def item_names(self, domain: str, *, next_token: str = "") -> Iterator[str]:
        """
        Yield every item name in a domain.

        SimpleDB pages select results; `next_token` resumes an earlier scan.
        """

        expression = f"select itemName() from {_quote_name(domain)}"
        for item in self._select(expression, next_token=next_token):
            yield str(item.get("Name") or "")

    def items(self, domain: str) -> Iterator[tuple[str, dict[str, str]]]:
        expression = f"select * from {_quote_name(domain)}"
        for item in self._select(expression):
            yield str(item.get("Name") or ""), attributes_to_dict(item.get("Attributes"))

    def find_item_names(self, domain: str, attribute: str, value: str) -> list[str]:
        expression = (
            f"select itemName() from {_quote_name(domain)} "
            f"where {_quote_name(attribute)} = {_quote_value(value)}"
        )
        return [str(item.get("Name") or "") for item in self._select(expression)]

    def count(self, domain: str) -> int:
        total = 0
        for item in self._select(f"select count(*) from {_quote_name(domain)}"):
            total += int(attributes_to_dict(item.get("Attributes")).get("Count") or 0)
        return total
