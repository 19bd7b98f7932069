import hmac
import json
import logging
import re
import secrets
from dataclasses import dataclass

from django.apps import apps
from django.conf import settings
from django.contrib.auth import hashers
from django.core.exceptions import ImproperlyConfigured
from django.utils import timezone

from samlauthdriver.models import SamlAccount

logger = logging.getLogger(__name__)

# Holders of this permission may always log in with their local password.
CONFIG_PERMISSION = 'samlauthdriver.config_access'


class SamlAuthError(Exception):
    pass


class InvalidUserError(SamlAuthError, ValueError):
    pass


# Credentials of an ordinary login/password authentication.
@dataclass(frozen=True)
class PasswordLogin:
    login: str
    password: str


# Credentials of a login whose SAML assertion was already validated. The
# token is the one returned by SamlAuthDriver.activate_auth_with_saml().
@dataclass(frozen=True)
class FederatedLogin:
    login: str
    assertion_token: str


# Binds SAML identities to the local user accounts. Parameters given to the
# constructor are overridden by the SAML_AUTH setting. An instance keeps the
# state of one login and must not be shared between requests.
class SamlAuthDriver:

    def __init__(self, **params):
        params.update(getattr(settings, 'SAML_AUTH', None) or {})
        if 'dao' not in params:
            params['dao'] = settings.AUTH_USER_MODEL
        if not params['dao']:
            raise ImproperlyConfigured('The user model (dao) is missing from the SAML configuration')
        try:
            self.user_model = apps.get_model(params['dao'])
        except (LookupError, ValueError) as e:
            raise ImproperlyConfigured(f"Unknown user model in the SAML configuration: {params['dao']}") from e

        self.profile = params.get('profile') or 'default'
        self.automatic_account_creation = bool(params.get('automaticAccountCreation', False))
        self.allow_local_password = bool(params.get('allowSAMLAccountToUseLocalPassword', False))
        self.attributes_mapping = dict(params.get('attributesMapping') or {})
        self.login_field = self.user_model.USERNAME_FIELD

        # True if the current login process is made with SAML.
        self.auth_with_saml_activated = False
        self.current_password = ''
        self.saml_attributes_values = {}
        self.user_attributes_values = {}

    def normalize_login(self, login):
        return login.lower()

    def users(self):
        return self.user_model._default_manager.using(self.profile)

    def get_login(self, user):
        return self.normalize_login(getattr(user, self.login_field))

    def create_user_object(self, login, password):
        user = self.user_model(**{self.login_field: self.normalize_login(login)})
        user.password = hashers.make_password(password)
        return user

    def save_new_user(self, user):
        user.save(force_insert=True, using=self.profile)
        if self.auth_with_saml_activated:
            self.create_saml_account(user)
        return True

    def create_saml_account(self, user):
        now = timezone.now()
        account = SamlAccount.objects.create(
            login=self.get_login(user),
            first_used=now,
            last_used=now,
            usage_count=1,
            saml_data=json.dumps(self.saml_attributes_values))
        logger.info('SAML account created for %s', account.login)
        return account

    def update_saml_account(self, user):
        try:
            account = SamlAccount.objects.get(login=self.get_login(user))
        except SamlAccount.DoesNotExist:
            # Account provisioned before it was ever used with SAML.
            return self.create_saml_account(user)

        account.last_used = timezone.now()
        account.usage_count += 1
        account.saml_data = json.dumps(self.saml_attributes_values)
        account.save()
        logger.debug('SAML account of %s used %d times', account.login, account.usage_count)
        return account

    def remove_user(self, login):
        login = self.normalize_login(login)
        # The link goes first: a user left without it is simply a local account.
        SamlAccount.objects.filter(login=login).delete()
        self.users().filter(**{self.login_field: login}).delete()
        return True

    def update_user(self, user):
        if not isinstance(user, self.user_model):
            raise InvalidUserError('Unknown user object')
        if not getattr(user, self.login_field, ''):
            raise InvalidUserError('The login of the user is not set')
        user.save(using=self.profile)
        return True

    def get_user(self, login):
        try:
            return self.users().get(**{self.login_field: self.normalize_login(login)})
        except self.user_model.DoesNotExist:
            return None

    # "%" matches any run of characters; the rest of the pattern is a prefix.
    def get_user_list(self, pattern):
        users = self.users().order_by(self.login_field)
        if pattern in ('', '%'):
            return users.all()
        regex = '.*'.join(re.escape(part) for part in pattern.split('%'))
        return users.filter(**{f'{self.login_field}__iregex': f'^{regex}'})

    def can_change_password(self, login):
        return self.can_use_local_password(login)

    def change_password(self, login, new_password):
        return self.update_password(login, hashers.make_password(new_password))

    def update_password(self, login, encoded):
        updated = self.users().filter(**{self.login_field: self.normalize_login(login)}) \
                              .update(password=encoded)
        return updated > 0

    # Returns the new hash when the stored one must be upgraded, a boolean otherwise.
    def check_password(self, password, encoded):
        upgraded = []

        def setter(raw_password):
            upgraded.append(hashers.make_password(raw_password))

        if not hashers.check_password(password, encoded, setter):
            return False
        return upgraded[0] if upgraded else True

    def can_use_local_password(self, login):
        if self.allow_local_password:
            return True

        # Users that never logged in with SAML keep their local password.
        login = self.normalize_login(login)
        if not SamlAccount.objects.filter(login=login).exists():
            return True

        # So do the administrators of the SAML configuration.
        user = self.get_user(login)
        return user is not None and user.has_perm(CONFIG_PERMISSION)

    # Call it before authenticating a user whose SAML assertion is valid.
    # Returns the random password to give to verify_password().
    def activate_auth_with_saml(self):
        self.auth_with_saml_activated = True
        self.current_password = secrets.token_hex(16)
        return self.current_password

    def deactivate_auth_with_saml(self):
        self.auth_with_saml_activated = False
        self.current_password = ''

    def verify_password(self, login, password):
        if self.auth_with_saml_activated:
            return self.verify(FederatedLogin(login, password))
        return self.verify(PasswordLogin(login, password))

    # Returns the user, or a false value when the authentication fails.
    # SAML mode only lasts for a single verification.
    def verify(self, credentials):
        try:
            if isinstance(credentials, FederatedLogin):
                return self.verify_federated_login(credentials)
            return self.verify_password_login(credentials)
        finally:
            self.deactivate_auth_with_saml()

    def verify_federated_login(self, credentials):
        expected = self.current_password.encode(encoding='utf-8')
        given = (credentials.assertion_token or '').encode(encoding='utf-8')
        if not self.auth_with_saml_activated or not expected or not hmac.compare_digest(expected, given):
            logger.warning('Invalid SAML authentication token for %s', credentials.login)
            return False
        self.current_password = ''

        user = self.get_user(credentials.login)
        if user is not None:
            self.update_saml_account(user)
            logger.info('%s authenticated with SAML', credentials.login)
            return user

        if not self.automatic_account_creation:
            logger.info('No local account for %s and automatic account creation is disabled',
                        credentials.login)
            return None

        user = self.create_user_object(credentials.login, credentials.assertion_token)
        for field, value in self.user_attributes_values.items():
            setattr(user, field, value)
        self.save_new_user(user)
        if self.community_module_enabled():
            self.mark_email_verified(user)
        logger.info('Local account created for %s from its SAML identity', credentials.login)
        return user

    def verify_password_login(self, credentials):
        user = self.get_user(credentials.login)
        if user is None:
            return False

        if not self.can_use_local_password(credentials.login):
            logger.warning('Local password login refused for SAML account %s', credentials.login)
            return False

        result = self.check_password(credentials.password, user.password)
        if result is False:
            return False

        if result is not True:
            # New hash for the password, store it.
            user.password = result
            self.update_password(credentials.login, result)
        return user

    def community_module_enabled(self):
        return apps.is_installed('allauth.account')

    def mark_email_verified(self, user):
        email = getattr(user, 'email', '')
        if not email:
            return
        # Only importable when allauth.account is an installed app.
        from allauth.account.models import EmailAddress

        EmailAddress.objects.update_or_create(
            user=user, email=email, defaults={'verified': True, 'primary': True})

    def set_attributes_mapping(self, saml_attributes, mapping):
        self.saml_attributes_values = saml_attributes

        for field, attribute in mapping.items():
            value = saml_attributes.get(attribute)
            if not value:
                continue
            if isinstance(value, (list, tuple)):
                value = value[0]
            self.user_attributes_values[field] = value

    def get_saml_attributes(self):
        return self.saml_attributes_values

    def get_user_attributes(self):
        return self.user_attributes_values
