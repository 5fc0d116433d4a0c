from shared.clients.accounts.AccountClientInterface import AccountClientInterface
from shared.helper.HelperConfig import HelperConfig
from shared.models.config import EnvConfig


class AccountClientRest(AccountClientInterface):
    """Reads active email accounts from a paginated JSON listing.

    Expected page shape: {"count": 2, "next": "...", "results": [{"user_id": "42", ...}]}
    """

    def __init__(self, helper_config: HelperConfig):
        super().__init__(helper_config=helper_config)
        self._base_url = self.get_config_val("BASE_URL", default=None, val_type="string")
        self._api_key = self.get_config_val("API_KEY", default="", val_type="string")

    ##########################################
    ################ GETTER ##################
    ##########################################

    ################ GENERAL ##################
    def _get_engine_name(self) -> str:
        return "Rest"

    ################ CONFIG ##################
    def _get_required_config(self) -> list[EnvConfig]:
        return [
            EnvConfig(env_key="BASE_URL", val_type="string", default=None),
            EnvConfig(env_key="API_KEY", val_type="string", default=""),
        ]

    ################ AUTH ##################
    def _get_auth_header(self) -> dict:
        if self._api_key:
            return {"Authorization": f"Token {self._api_key}"}
        else:
            return {}

    ################ ENDPOINTS ##################
    def _get_base_url(self) -> str:
        return self._base_url

    def _get_endpoint_healthcheck(self) -> str:
        return "/api/email-accounts/"

    def _get_endpoint_active_accounts(self, page: int = 1, page_size: int = 100) -> str:
        return f"/api/email-accounts/?is_active=true&page={page}&page_size={page_size}"

    ##########################################
    ########### RESPONSE PARSER ##############
    ##########################################

    def extract_user_ids(self, response_data: dict) -> list[str]:
        return [str(account["user_id"]) for account in response_data.get("results", []) if account.get("user_id") is not None]

    def has_next_page(self, response_data: dict) -> bool:
        return bool(response_data.get("next"))
