"""Test that the project setup is working correctly."""

import eth_token_tracker


def test_version() -> None:
    """Test that version is defined."""
    assert eth_token_tracker.__version__ == "0.1.0"


def test_import_modules() -> None:
    """Test that all submodules can be imported."""
    from eth_token_tracker import api
    from eth_token_tracker import cli
    from eth_token_tracker import config
    from eth_token_tracker import ingestor
    from eth_token_tracker import query
    from eth_token_tracker import storage
    from eth_token_tracker import tracker

    # Just verify imports work
    assert api is not None
    assert cli is not None
    assert config is not None
    assert ingestor is not None
    assert query is not None
    assert storage is not None
    assert tracker is not None
