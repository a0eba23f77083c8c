from hypothesis import given
from hypothesis import strategies as st

from profile_workers.models import Profile
from profile_workers.tos import apply_tos_auto_enable, is_first_tos_acceptance

FISCAL_CODE = "AAAAAA00A00A000A"

tos_versions = st.none() | st.integers(min_value=0, max_value=50)


def test_first_acceptance():
    assert is_first_tos_acceptance(None, 1)
    assert not is_first_tos_acceptance(None, None)
    assert not is_first_tos_acceptance(1, 2)
    assert not is_first_tos_acceptance(1, None)


@given(inbox=st.booleans(), webhook=st.booleans(), tos=st.integers(min_value=0, max_value=50))
def test_first_acceptance_forces_both_flags(inbox, webhook, tos):
    profile = Profile(
        fiscal_code=FISCAL_CODE,
        version=1,
        accepted_tos_version=tos,
        is_inbox_enabled=inbox,
        is_webhook_enabled=webhook,
    )
    result = apply_tos_auto_enable(None, profile)
    assert result.is_inbox_enabled is True
    assert result.is_webhook_enabled is True


@given(
    previous=st.integers(min_value=0, max_value=50),
    new=tos_versions,
    inbox=st.booleans(),
    webhook=st.booleans(),
)
def test_flags_untouched_after_first_acceptance(previous, new, inbox, webhook):
    profile = Profile(
        fiscal_code=FISCAL_CODE,
        version=1,
        accepted_tos_version=new,
        is_inbox_enabled=inbox,
        is_webhook_enabled=webhook,
    )
    assert apply_tos_auto_enable(previous, profile) == profile


def test_other_fields_are_preserved():
    profile = Profile(
        fiscal_code=FISCAL_CODE,
        version=1,
        email="citizen@example.com",
        is_email_enabled=False,
        accepted_tos_version=1,
    )
    result = apply_tos_auto_enable(None, profile)
    assert result.email == "citizen@example.com"
    assert result.is_email_enabled is False
