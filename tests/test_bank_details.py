"""
Bank Detail Service Tests
Validation, default selection and soft deletion of payee accounts
"""

import pytest

from services.bank_detail_service import BankDetailService
from tests.fixtures import BUYER_ID, VALID_BANK_DETAIL
from utils.exceptions import BadInputError, NotFoundError


@pytest.fixture
def service():
    return BankDetailService()


def _detail(**overrides):
    data = dict(VALID_BANK_DETAIL)
    data.update(overrides)
    return data


@pytest.mark.usefixtures("clean_database")
class TestBankDetailService:

    @pytest.mark.asyncio
    async def test_first_detail_becomes_default(self, service):
        detail = await service.add_bank_detail(BUYER_ID, **_detail())

        assert detail["is_default"] is True, "First account should be the default"
        assert detail["account_last4"] == "9012"
        assert "account_number" not in detail

    @pytest.mark.asyncio
    async def test_routing_code_is_normalised(self, service):
        detail = await service.add_bank_detail(BUYER_ID, **_detail(routing_code=" hdfc0001234 "))
        assert detail["routing_code"] == "HDFC0001234"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("overrides", [
        {"routing_code": "HDFC1001234"},
        {"account_number": "12345"},
        {"account_number": "12345678901234567890"},
        {"holder_name": "   "},
        {"kind": "checking"},
    ])
    async def test_invalid_details_rejected(self, service, overrides):
        with pytest.raises(BadInputError):
            await service.add_bank_detail(BUYER_ID, **_detail(**overrides))

    @pytest.mark.asyncio
    async def test_duplicate_account_rejected(self, service):
        await service.add_bank_detail(BUYER_ID, **_detail())
        with pytest.raises(BadInputError):
            await service.add_bank_detail(BUYER_ID, **_detail())

    @pytest.mark.asyncio
    async def test_new_default_replaces_old(self, service):
        first = await service.add_bank_detail(BUYER_ID, **_detail())
        second = await service.add_bank_detail(BUYER_ID, **_detail(account_number="987654321098"), is_default=True)

        listing = await service.list_bank_details(BUYER_ID)
        defaults = [d["id"] for d in listing if d["is_default"]]
        assert defaults == [second["id"]], "Exactly one default per user"
        assert first["id"] in [d["id"] for d in listing]

    @pytest.mark.asyncio
    async def test_set_default(self, service):
        first = await service.add_bank_detail(BUYER_ID, **_detail())
        await service.add_bank_detail(BUYER_ID, **_detail(account_number="987654321098"), is_default=True)

        updated = await service.set_default_bank_detail(BUYER_ID, first["id"])

        assert updated["is_default"] is True
        listing = await service.list_bank_details(BUYER_ID)
        assert [d["id"] for d in listing if d["is_default"]] == [first["id"]]

    @pytest.mark.asyncio
    async def test_deleting_default_promotes_remaining(self, service):
        first = await service.add_bank_detail(BUYER_ID, **_detail())
        second = await service.add_bank_detail(BUYER_ID, **_detail(account_number="987654321098"))

        result = await service.delete_bank_detail(BUYER_ID, first["id"])

        assert result == {"deleted": first["id"], "new_default": second["id"]}
        listing = await service.list_bank_details(BUYER_ID)
        assert [d["id"] for d in listing] == [second["id"]]
        assert listing[0]["is_default"] is True

    @pytest.mark.asyncio
    async def test_cannot_touch_other_users_detail(self, service):
        detail = await service.add_bank_detail(BUYER_ID, **_detail())

        with pytest.raises(NotFoundError):
            await service.delete_bank_detail("someone-else", detail["id"])
        with pytest.raises(NotFoundError):
            await service.set_default_bank_detail("someone-else", detail["id"])
