import json
import re
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest
from botocore.exceptions import ClientError

ROOT = Path(__file__).resolve().parents[1]
for _p in (ROOT, ROOT / "lambda"):
    if str(_p) not in sys.path:
        sys.path.insert(0, str(_p))

_SELECT_RE = re.compile(
    r"^select (?P<what>itemName\(\)|\*|count\(\*\)) from `(?P<domain>(?:[^`]|``)+)`"
    r"(?: where `(?P<attr>(?:[^`]|``)+)` = '(?P<value>(?:[^']|'')*)')?$"
)


def _client_error(code: str, op: str) -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": f"fake {code}"}}, op)


class FakeSdb:
    """In-memory SimpleDB client covering the calls IdentityStore makes."""

    def __init__(self, *, page_size: int = 100):
        self.domains: dict[str, dict[str, dict[str, list[str]]]] = {}
        self.page_size = page_size
        self.fail_on: set[str] = set()
        self.calls: list[tuple[str, dict]] = []
        # Per-domain item names whose reads come back empty, to simulate a lost write.
        self.drop_reads: set[tuple[str, str]] = set()

    def _record(self, op: str, kwargs: dict) -> None:
        self.calls.append((op, kwargs))
        if op in self.fail_on:
            raise _client_error("ServiceUnavailable", op)

    def _domain(self, name: str, op: str) -> dict[str, dict[str, list[str]]]:
        if name not in self.domains:
            raise _client_error("NoSuchDomain", op)
        return self.domains[name]

    def list_domains(self, **kwargs):
        self._record("list_domains", kwargs)
        names = sorted(self.domains)
        start = int(kwargs.get("NextToken") or 0)
        page = names[start : start + self.page_size]
        out: dict = {"DomainNames": page}
        if start + self.page_size < len(names):
            out["NextToken"] = str(start + self.page_size)
        return out

    def create_domain(self, **kwargs):
        self._record("create_domain", kwargs)
        self.domains.setdefault(kwargs["DomainName"], {})
        return {}

    def put_attributes(self, **kwargs):
        self._record("put_attributes", kwargs)
        item = self._domain(kwargs["DomainName"], "PutAttributes").setdefault(kwargs["ItemName"], {})
        for attr in kwargs["Attributes"]:
            if attr.get("Replace"):
                item[attr["Name"]] = [attr["Value"]]
            else:
                item.setdefault(attr["Name"], []).append(attr["Value"])
        return {}

    def get_attributes(self, **kwargs):
        self._record("get_attributes", kwargs)
        domain = self._domain(kwargs["DomainName"], "GetAttributes")
        if (kwargs["DomainName"], kwargs["ItemName"]) in self.drop_reads:
            return {}
        item = domain.get(kwargs["ItemName"])
        if not item:
            return {}
        return {"Attributes": [{"Name": n, "Value": v} for n, vals in item.items() for v in vals]}

    def delete_attributes(self, **kwargs):
        self._record("delete_attributes", kwargs)
        self._domain(kwargs["DomainName"], "DeleteAttributes").pop(kwargs["ItemName"], None)
        return {}

    def select(self, **kwargs):
        self._record("select", kwargs)
        m = _SELECT_RE.match(kwargs["SelectExpression"])
        assert m, kwargs["SelectExpression"]
        domain = self._domain(m.group("domain").replace("``", "`"), "Select")
        names = sorted(domain)
        if m.group("attr") is not None:
            attr = m.group("attr").replace("``", "`")
            value = m.group("value").replace("''", "'")
            names = [n for n in names if value in domain[n].get(attr, [])]

        if m.group("what") == "count(*)":
            return {"Items": [{"Name": "Domain", "Attributes": [{"Name": "Count", "Value": str(len(names))}]}]}

        start = int(kwargs.get("NextToken") or 0)
        page = names[start : start + self.page_size]
        items = []
        for n in page:
            entry: dict = {"Name": n}
            if m.group("what") == "*":
                entry["Attributes"] = [{"Name": a, "Value": v} for a, vals in domain[n].items() for v in vals]
            items.append(entry)
        out: dict = {"Items": items}
        if start + self.page_size < len(names):
            out["NextToken"] = str(start + self.page_size)
        return out


class FakeSts:
    def __init__(self, *, account: str = "123456789012"):
        self.account = account
        self.calls: list[tuple[str, dict]] = []
        self.fail = False
        self.expiration = datetime(2030, 1, 1, tzinfo=timezone.utc)

    def _credentials(self, op: str, kwargs: dict) -> dict:
        self.calls.append((op, kwargs))
        if self.fail:
            raise _client_error("AccessDenied", op)
        return {
            "Credentials": {
                "AccessKeyId": "ASIAFAKE",
                "SecretAccessKey": "fake-secret",
                "SessionToken": "fake-session-token",
                "Expiration": self.expiration,
            }
        }

    def get_federation_token(self, **kwargs):
        return self._credentials("get_federation_token", kwargs)

    def assume_role(self, **kwargs):
        return self._credentials("assume_role", kwargs)

    def get_caller_identity(self, **kwargs):
        self.calls.append(("get_caller_identity", kwargs))
        return {"Account": self.account}


class LogSink:
    def __init__(self):
        self.lines: list[str] = []

    def __call__(self, line: str) -> None:
        self.lines.append(line)

    def events(self) -> list[dict]:
        return [json.loads(line) for line in self.lines]


def iso(dt: datetime) -> str:
    return dt.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z"


def now_iso(offset: timedelta = timedelta(0)) -> str:
    return iso(datetime.now(timezone.utc) + offset)


@pytest.fixture
def sdb():
    return FakeSdb()


@pytest.fixture
def sts():
    return FakeSts()


@pytest.fixture
def log_sink():
    return LogSink()


@pytest.fixture
def event_log(log_sink):
    from tvm_log import EventLog

    return EventLog(schema_version="test", sink=log_sink)


@pytest.fixture
def config():
    from tvm_config import load_config

    return load_config({"TVM_APP_NAME": "MyApp", "TVM_ACCOUNT_ID": "123456789012", "TVM_SDB_REGION": "us-east-1"})


@pytest.fixture
def machine(config, event_log, sdb, sts):
    from token_vending import build_machine

    return build_machine(config, event_log, sdb=sdb, sts=sts)
