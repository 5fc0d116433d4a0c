from shared.helper.HelperConfig import HelperConfig
from shared.clients.rag.RAGClientInterface import RAGClientInterface


class RAGClientManager:
    """
    Instantiates the corpus store client selected by RAG_ENGINE (e.g. "qdrant" or "memory").
    """

    def __init__(self, helper_config: HelperConfig):
        self.helper_config = helper_config
        self.logging = helper_config.get_logger()
        self.client = self._initialize_client()

    def _get_engine_from_env(self) -> str:
        """
        Reads the RAG engine from ENV configuration.

        Returns:
            str: The engine name, capitalised for class lookup (e.g. "Qdrant").

        Raises:
            ValueError: If RAG_ENGINE is not set.
        """
        engine = self.helper_config.get_string_val("RAG_ENGINE")
        return engine.strip().lower().capitalize()

    def _initialize_client(self) -> RAGClientInterface:
        """
        Imports shared.clients.rag.<engine>.RAGClient<Engine> and instantiates it.

        Returns:
            RAGClientInterface: The configured corpus store client.

        Raises:
            ValueError: If the engine is unknown or its class cannot be loaded.
        """
        engine = self._get_engine_from_env()
        class_name = f"RAGClient{engine}"
        try:
            module = __import__(
                f"shared.clients.rag.{engine.lower()}.{class_name}",
                fromlist=[class_name],
            )
            client_class = getattr(module, class_name)
        except (ImportError, AttributeError) as e:
            raise ValueError(f"Unsupported RAG engine specified: '{engine}'. Error: {e}")
        client = client_class(helper_config=self.helper_config)
        self.logging.debug("Instantiated RAG client for engine: %s", engine)
        return client

    def get_client(self) -> RAGClientInterface:
        """
        Returns the instantiated RAG client.
        """
        return self.client
