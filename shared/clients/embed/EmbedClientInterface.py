from abc import abstractmethod

from shared.clients.ClientInterface import ClientInterface
from shared.helper.HelperConfig import HelperConfig
from shared.models.errors import EmbeddingError, RetrievalError


class EmbedClientInterface(ClientInterface):
    def __init__(self, helper_config: HelperConfig):
        super().__init__(helper_config=helper_config)

        # model config
        self.embed_model = helper_config.get_string_val(f"{self.get_client_type().upper()}_MODEL", default=None)
        self.embed_model_max_chars = helper_config.get_number_val(f"{self.get_client_type().upper()}_MODEL_MAX_CHARS", default=0)

    ##########################################
    ################ GETTER ##################
    ##########################################

    ################ GENERAL ##################
    def _get_client_type(self) -> str:
        """
        Returns the type of the client. E.g. "embed"
        """
        return "embed"

    def _get_error_class(self) -> type[RetrievalError]:
        return EmbeddingError

    ################ ENDPOINTS ##################
    @abstractmethod
    def get_endpoint_embedding(self) -> str:
        """
        Returns the endpoint path for embedding requests.

        Returns:
            str: The endpoint path for embedding requests (e.g. "/api/embed")
        """
        pass

    @abstractmethod
    def get_endpoint_model_details(self) -> str:
        """
        Returns the endpoint path for model details requests.

        Returns:
            str: The endpoint path for model details requests (e.g. "/api/show")
        """
        pass

    ################ PAYLOAD BUILDER ##################
    @abstractmethod
    def get_embed_payload(self, texts: list[str]) -> dict:
        """Build the backend-specific request body for an embedding request.

        Args:
            texts (list[str]): The texts to embed.

        Returns:
            dict: JSON-serialisable request body (e.g. {"model": "...", "input": [...]}).
        """
        pass

    ##########################################
    ########### RESPONSE PARSER ##############
    ##########################################

    @abstractmethod
    def extract_vector_size_from_model_info(self, model_info: dict) -> int:
        """
        Extracts the embedding vector size from the model information response.

        Raises:
            EmbeddingError: If the vector size cannot be determined.
        """
        pass

    @abstractmethod
    def extract_embeddings_from_response(self, response_data: dict) -> list[list[float]]:
        """Extract embedding vectors from a raw embedding API response.

        Args:
            response_data (dict): The parsed JSON response body.

        Returns:
            list[list[float]]: Embedding vectors in the same order as the input texts.

        Raises:
            EmbeddingError: If the response format is invalid or embeddings are empty.
        """
        pass

    ##########################################
    ############### REQUESTS #################
    ##########################################

    async def do_fetch_embedding_vector_size(self) -> int:
        """
        Fetch the output vector dimension of the configured embedding model.

        Returns:
            int: The number of dimensions produced by the embedding model.

        Raises:
            EmbeddingError: If the backend cannot be reached or the dimension cannot be
                determined from the response.
        """
        response = await self.do_request(
            method="POST",
            json={"name": self.embed_model},
            endpoint=self.get_endpoint_model_details(),
            raise_on_error=True,
        )
        return self.extract_vector_size_from_model_info(model_info=response.json())

    async def do_embed(self, texts: list[str] | str) -> list[list[float]]:
        """Send an embedding request and return the extracted vectors.

        Texts longer than EMBED_MODEL_MAX_CHARS are cut before sending.

        Args:
            texts (list[str] | str): One or more texts to embed.

        Returns:
            list[list[float]]: Embedding vectors in the same order as the inputs.

        Raises:
            EmbeddingError: If the request fails or the backend returns a different
                number of vectors than texts were sent.
        """
        texts = [texts] if isinstance(texts, str) else texts
        if not texts:
            return []
        if self.embed_model_max_chars:
            texts = [t[: int(self.embed_model_max_chars)] for t in texts]
        body = self.get_embed_payload(texts)
        response = await self.do_request(method="POST", endpoint=self.get_endpoint_embedding(), json=body, raise_on_error=True)
        embeddings = self.extract_embeddings_from_response(response.json())
        if len(embeddings) != len(texts):
            raise EmbeddingError(f"Embedding backend returned {len(embeddings)} vectors for {len(texts)} texts.")
        return embeddings
