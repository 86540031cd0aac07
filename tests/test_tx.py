import pytest
from sqlalchemy.orm.exc import StaleDataError

from trustwork.errors import ConflictError
from trustwork.services.tx import operation_memo, retry_stable, serialized


def test_lost_write_is_retried_once(app):
    runs = []

    @serialized
    def op():
        runs.append(retry_stable("ref", lambda: f"ref-{len(runs)}"))
        if len(runs) == 1:
            raise StaleDataError("row changed")
        return runs[-1]

    assert op() == "ref-0"
    assert runs == ["ref-0", "ref-0"]
    assert operation_memo() is None


def test_second_lost_write_is_a_conflict(app):
    runs = []

    @serialized
    def op():
        runs.append(1)
        raise StaleDataError("row changed")

    with pytest.raises(ConflictError) as exc:
        op()
    assert exc.value.code == "CONFLICT"
    assert exc.value.details == {"operation": "op"}
    assert len(runs) == 2
