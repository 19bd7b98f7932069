from django.db import models


# Models the link between a local login and a SAML identity.
class SamlAccount(models.Model):
    # Login of the local user account, normalised to lower case.
    login = models.TextField(primary_key=True)
    first_used = models.DateTimeField()
    last_used = models.DateTimeField()
    usage_count = models.PositiveIntegerField(default=1)

    # JSON copy of the attributes received with the last assertion.
    saml_data = models.TextField(blank=True, default='')

    class Meta:
        permissions = [
            ('config_access', 'Can administrate the SAML configuration'),
        ]

    def __str__(self):
        return self.login
