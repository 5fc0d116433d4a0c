from shared.helper.HelperConfig import HelperConfig
from shared.clients.accounts.AccountClientInterface import AccountClientInterface


class AccountClientManager:
    """
    Instantiates the account-membership client selected by ACCOUNTS_ENGINE.
    """

    def __init__(self, helper_config: HelperConfig):
        self.helper_config = helper_config
        self.logging = helper_config.get_logger()
        self.client = self._initialize_client()

    def _get_engine_from_env(self) -> str:
        engine = self.helper_config.get_string_val("ACCOUNTS_ENGINE", default="rest")
        return engine.strip().lower().capitalize()

    def _initialize_client(self) -> AccountClientInterface:
        """
        Imports shared.clients.accounts.<engine>.AccountClient<Engine> and instantiates it.

        Raises:
            ValueError: If the engine is unknown or its class cannot be loaded.
        """
        engine = self._get_engine_from_env()
        class_name = f"AccountClient{engine}"
        try:
            module = __import__(
                f"shared.clients.accounts.{engine.lower()}.{class_name}",
                fromlist=[class_name],
            )
            client_class = getattr(module, class_name)
        except (ImportError, AttributeError) as e:
            raise ValueError(f"Unsupported accounts engine specified: '{engine}'. Error: {e}")
        client = client_class(helper_config=self.helper_config)
        self.logging.debug("Instantiated accounts client for engine: %s", engine)
        return client

    def get_client(self) -> AccountClientInterface:
        return self.client
