import logging

from django.contrib import auth
from django.contrib.auth.backends import ModelBackend

from samlauthdriver.driver import SamlAuthDriver

logger = logging.getLogger(__name__)


# Replaces ModelBackend in AUTHENTICATION_BACKENDS, otherwise the local
# password of SAML accounts would still be accepted by ModelBackend.
class SamlAuthBackend(ModelBackend):
    def authenticate(self, request, username=None, password=None, **kwargs):
        driver = self.get_driver(request)
        if username is None:
            username = kwargs.get(driver.login_field)
        if username is None or password is None:
            return None

        # Inactive users are refused before their SAML account is touched.
        existing = driver.get_user(username)
        if existing is not None and not self.user_can_authenticate(existing):
            driver.deactivate_auth_with_saml()
            return None

        user = driver.verify_password(username, password)
        if user and self.user_can_authenticate(user):
            return user
        return None

    # The driver prepared by login_with_saml() travels with the request.
    def get_driver(self, request):
        driver = getattr(request, 'saml_auth_driver', None)
        if driver is None:
            driver = SamlAuthDriver()
        return driver


# Logs in the user of an assertion accepted by the SAML validator. Returns
# None when no local account matches the login and the automatic account
# creation is disabled.
def login_with_saml(request, login, saml_attributes, mapping=None):
    driver = SamlAuthDriver()
    if mapping is None:
        mapping = driver.attributes_mapping
    driver.set_attributes_mapping(saml_attributes, mapping)
    token = driver.activate_auth_with_saml()

    request.saml_auth_driver = driver
    try:
        user = auth.authenticate(request, username=login, password=token)
    finally:
        del request.saml_auth_driver

    if user is None:
        logger.info('SAML login of %s refused', login)
        return None

    auth.login(request, user)
    return user
