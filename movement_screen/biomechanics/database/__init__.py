"""Movement test catalog."""

from .fms_tests import DEFAULT_TESTS, get_catalog, get_test, list_tests, load_catalog_from_file

__all__ = ["DEFAULT_TESTS", "get_catalog", "get_test", "list_tests", "load_catalog_from_file"]
