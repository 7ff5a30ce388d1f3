import pytest


@pytest.fixture
def headers(auth_headers):
    return {
        "customer": auth_headers("CUSTOMER", "user-1"),
        "other_customer": auth_headers("CUSTOMER", "user-2"),
        "rider": auth_headers("RIDER", "rider-7"),
        "other_rider": auth_headers("RIDER", "rider-9"),
        "ops": auth_headers("OPS", "ops-1"),
        "admin": auth_headers("ADMIN", "admin-1"),
    }
