from datetime import date

import pytest

from backend.orderbot.errors import ProfileNotFound, ValidationError
from backend.orderbot.services import profiles


@pytest.mark.asyncio
async def test_credential_is_stored_encrypted(db, make_account, make_profile):
    account_id = (await make_account()).id
    profile = await make_profile(account_id, credential="secret12")

    assert profile.credential_encrypted
    assert "secret12" not in profile.credential_encrypted
    assert profiles.has_credential(profile)
    assert profiles.reveal_credential(profile) == "secret12"


@pytest.mark.asyncio
async def test_profile_without_credential(make_account, make_profile):
    account_id = (await make_account()).id
    profile = await make_profile(account_id)
    assert not profiles.has_credential(profile)
    assert profiles.reveal_credential(profile) is None


@pytest.mark.asyncio
async def test_update_and_delete_are_owner_only(db, make_account, make_profile):
    owner_id = (await make_account(telegram_id=1)).id
    other_id = (await make_account(telegram_id=2)).id
    profile_id = (await make_profile(owner_id)).id

    updated = await profiles.update_profile(db, owner_id, profile_id, {"city": "Boston", "dob": "1985-01-02"})
    await db.commit()
    assert updated.city == "Boston"
    assert updated.dob == date(1985, 1, 2)

    with pytest.raises(ProfileNotFound):
        await profiles.delete_profile(db, other_id, profile_id)

    await profiles.delete_profile(db, owner_id, profile_id)
    await db.commit()
    assert await profiles.list_profiles(db, owner_id) == []


@pytest.mark.asyncio
async def test_incomplete_draft_is_rejected(db, make_account):
    account_id = (await make_account()).id
    with pytest.raises(ValidationError):
        await profiles.create_profile(db, account_id, {"first_name": "John", "last_name": "Smith"})
