from abc import abstractmethod

from shared.clients.ClientInterface import ClientInterface
from shared.helper.HelperConfig import HelperConfig


class AccountClientInterface(ClientInterface):
    """Account-membership collaborator: knows which users own an active email account.

    The migration enumerates its users here; nothing in this core writes to it.
    """

    def __init__(self, helper_config: HelperConfig):
        super().__init__(helper_config=helper_config)
        self.page_size = int(helper_config.get_number_val(f"{self.get_client_type().upper()}_PAGE_SIZE", default=100))

    ##########################################
    ################ GETTER ##################
    ##########################################

    ################ GENERAL ##################
    def _get_client_type(self) -> str:
        """
        Returns the type of the client. E.g. "accounts"
        """
        return "accounts"

    ################ ENDPOINTS ##################
    @abstractmethod
    def _get_endpoint_active_accounts(self, page: int = 1, page_size: int = 100) -> str:
        """
        Returns the endpoint path listing active email accounts, one page at a time.
        """
        pass

    ##########################################
    ########### RESPONSE PARSER ##############
    ##########################################

    @abstractmethod
    def extract_user_ids(self, response_data: dict) -> list[str]:
        """Return the owner user ids of the accounts in one listing page."""
        pass

    @abstractmethod
    def has_next_page(self, response_data: dict) -> bool:
        """Return True if the listing continues after this page."""
        pass

    ##########################################
    ############### REQUESTS #################
    ##########################################

    async def do_fetch_active_user_ids(self) -> list[str]:
        """Fetch the distinct ids of all users with at least one active email account.

        Returns:
            list[str]: User ids in the order the backend lists them, without duplicates.

        Raises:
            RetrievalError: If any page cannot be fetched.
        """
        user_ids: list[str] = []
        seen: set[str] = set()
        page = 1
        while True:
            response = await self.do_request(
                method="GET",
                endpoint=self._get_endpoint_active_accounts(page=page, page_size=self.page_size),
                raise_on_error=True,
            )
            data = response.json()
            for user_id in self.extract_user_ids(data):
                if user_id not in seen:
                    seen.add(user_id)
                    user_ids.append(user_id)
            if not self.has_next_page(data):
                break
            page += 1
        self.logging.debug("Fetched %d active users from %s in %d page(s).", len(user_ids), self.get_engine_name(), page)
        return user_ids
