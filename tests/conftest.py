"""
Shared fixtures: an in-memory lending system with one admin, one loan
officer and an approved customer.
"""

import pytest

from microlend.api.deps import LendingSystem
from microlend.config import MicrolendConfig
from microlend.rbac import StaffRole
from microlend.storage import InMemoryStorage

from helpers import register


@pytest.fixture
def config():
    return MicrolendConfig()


@pytest.fixture
def storage():
    """Create in-memory storage for tests"""
    return InMemoryStorage()


@pytest.fixture
def system(storage, config):
    return LendingSystem(storage=storage, config=config)


@pytest.fixture
def admin_user(system):
    return system.staff_manager.create_staff("Ada", "Mwale", "ada@microlend.test", role=StaffRole.ADMIN)


@pytest.fixture
def admin(admin_user):
    return admin_user.as_actor()


@pytest.fixture
def officer_user(system, admin):
    return system.staff_manager.create_staff(
        "Oscar", "Banda", "oscar@microlend.test", role=StaffRole.LOAN_OFFICER, created_by=admin
    )


@pytest.fixture
def officer(officer_user):
    return officer_user.as_actor()


@pytest.fixture
def customer(system, admin, officer):
    registered = register(system, officer)
    return system.customer_manager.approve_customer(registered.customer_id, admin)
