from shared.helper.HelperConfig import HelperConfig
from shared.clients.embed.EmbedClientInterface import EmbedClientInterface


class EmbedClientManager:
    """
    Manager class to handle the Embed client based on configuration.
    """

    def __init__(self, helper_config: HelperConfig):
        self.helper_config = helper_config
        self.logging = helper_config.get_logger()
        self.client = self._initialize_client()

    def _get_engine_from_env(self) -> str:
        """
        Reads the Embed engine from ENV configuration.

        Returns:
            str: The name of the Embed engine, capitalised for class lookup.

        Raises:
            ValueError: If no Embed engine is specified in the configuration.
        """
        engine = self.helper_config.get_string_val("EMBED_ENGINE")
        return engine.strip().lower().capitalize()

    def _initialize_client(self) -> EmbedClientInterface:
        """
        Imports shared.clients.embed.<engine>.EmbedClient<Engine> and instantiates it.

        Raises:
            ValueError: If the engine is unknown or its class cannot be loaded.
        """
        engine = self._get_engine_from_env()
        class_name = f"EmbedClient{engine}"
        try:
            module = __import__(
                f"shared.clients.embed.{engine.lower()}.{class_name}",
                fromlist=[class_name],
            )
            client_class = getattr(module, class_name)
        except (ImportError, AttributeError) as e:
            raise ValueError(f"Unsupported Embed engine specified: '{engine}'. Error: {e}")
        client = client_class(helper_config=self.helper_config)
        self.logging.debug("Instantiated Embed client for engine: %s", engine)
        return client

    def get_client(self) -> EmbedClientInterface:
        """
        Returns the instantiated Embed client.
        """
        return self.client
