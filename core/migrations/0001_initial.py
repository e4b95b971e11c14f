from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = []

    operations = [
        migrations.CreateModel(
            name="LocalEntry",
            fields=[
                (
                    "id",
                    models.BigAutoField(
                        auto_created=True,
                        primary_key=True,
                        serialize=False,
                        verbose_name="ID",
                    ),
                ),
                (
                    "key",
                    models.CharField(max_length=191, unique=True, verbose_name="clé"),
                ),
                (
                    "value",
                    models.JSONField(blank=True, null=True, verbose_name="valeur"),
                ),
                (
                    "saved_at",
                    models.DateTimeField(auto_now=True, verbose_name="enregistré le"),
                ),
            ],
            options={
                "verbose_name": "entrée locale",
                "verbose_name_plural": "entrées locales",
                "ordering": ["key"],
            },
        ),
    ]
