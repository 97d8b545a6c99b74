from importlib.metadata import PackageNotFoundError, version

import genwatch


def test_version_matches_installed_package_metadata() -> None:
    try:
        installed_version = version("genwatch")
    except PackageNotFoundError:
        assert genwatch.__version__ == "0.0.0"
    else:
        assert genwatch.__version__ == installed_version
