"""Test that the project setup is working correctly."""

import confidential_futures


def test_version() -> None:
    """Test that version is defined."""
    assert confidential_futures.__version__ == "0.1.0"


def test_import_modules() -> None:
    """Test that all submodules can be imported."""
    from confidential_futures import coordinator
    from confidential_futures import gateway
    from confidential_futures import storage

    # Just verify imports work
    assert coordinator is not None
    assert gateway is not None
    assert storage is not None
