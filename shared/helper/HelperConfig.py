"""Environment-backed configuration helper shared by the server, the ingest path and the migration runner."""

import logging
import os


class HelperConfig:
    """Reads typed settings from environment variables and hands out the application logger."""

    def __init__(self, logger: logging.Logger) -> None:
        self._logger = logger

    def _raw(self, key: str) -> str | None:
        # empty string counts as unset
        return os.getenv(key.upper()) or None

    def get_string_val(self, key: str, default: str | None = None) -> str:
        """Read a string environment variable.

        Args:
            key (str): Environment variable name (case-insensitive).
            default (str | None): Fallback value if the variable is not set.

        Returns:
            str: The stripped value, or the default.

        Raises:
            ValueError: If the variable is not set and no default is provided.
        """
        raw = self._raw(key)
        if raw is None:
            if default is None:
                raise ValueError(f"Environment variable '{key.upper()}' is not set.")
            return default
        return raw.strip()

    def get_number_val(self, key: str, default: float | int | None = None) -> float | int:
        """Read a numeric environment variable.

        Values containing a dot or an exponent are parsed as float, all others as int.

        Raises:
            ValueError: If the variable is not set and no default is provided,
                or if the value is not a number.
        """
        raw = self._raw(key)
        if raw is None:
            if default is None:
                raise ValueError(f"Environment variable '{key.upper()}' is not set.")
            return default
        raw = raw.strip()
        try:
            if "." in raw or "e" in raw.lower():
                return float(raw)
            return int(raw)
        except ValueError:
            raise ValueError(f"Environment variable '{key.upper()}' is not a valid number: '{raw}'.")

    def get_float_val(self, key: str, default: float | None = None) -> float:
        """Read a numeric environment variable and always return a float."""
        return float(self.get_number_val(key, default=default))

    def get_bool_val(self, key: str, default: bool | None = None) -> bool:
        """Read a boolean environment variable ("true", "1" and "yes" are truthy).

        Raises:
            ValueError: If the variable is not set and no default is provided.
        """
        raw = self._raw(key)
        if raw is None:
            if default is None:
                raise ValueError(f"Environment variable '{key.upper()}' is not set.")
            return default
        return raw.strip().lower() in ("true", "1", "yes")

    def get_list_val(self, key: str, default: list[str] | None = None, separator: str = ",", element_type: type = str) -> list:
        """Read a list environment variable written as "[elem1,elem2,...]".

        Args:
            key (str): Environment variable name (case-insensitive).
            default (list[str] | None): Fallback value if the variable is not set.
            separator (str): Delimiter between elements.
            element_type (type): Type every element is cast to.

        Returns:
            list: The parsed elements; empty brackets give an empty list.

        Raises:
            ValueError: If the variable is missing without default, is not bracketed,
                or contains elements that cannot be cast.
        """
        raw_val = self._raw(key)
        if raw_val is None:
            if default is None:
                raise ValueError(f"Environment variable '{key.upper()}' is not set.")
            return default
        raw_val = raw_val.strip()
        if not raw_val.startswith("[") or not raw_val.endswith("]"):
            raise ValueError(f"Environment variable '{key.upper()}' must be in the format '[elem1{separator}elem2{separator}...]'. Got: '{raw_val}'")
        elements = [v.strip() for v in raw_val[1:-1].split(separator) if v.strip()]
        try:
            return [element_type(elem) for elem in elements]
        except ValueError as e:
            raise ValueError(f"Environment variable '{key.upper()}' contains invalid elements for type {element_type.__name__}: {e}. Got: '{raw_val}'")

    def get_logger(self) -> logging.Logger:
        """Return the application logger."""
        return self._logger
