from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = []

    operations = [
        migrations.CreateModel(
            name='SamlAccount',
            fields=[
                ('login', models.TextField(primary_key=True, serialize=False)),
                ('first_used', models.DateTimeField()),
                ('last_used', models.DateTimeField()),
                ('usage_count', models.PositiveIntegerField(default=1)),
                ('saml_data', models.TextField(blank=True, default='')),
            ],
            options={
                'permissions': [('config_access', 'Can administrate the SAML configuration')],
            },
        ),
    ]
