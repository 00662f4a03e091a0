from django.db import migrations, models


class Migration(migrations.Migration):

    dependencies = [
        ("trust", "0001_initial"),
    ]

    operations = [
        migrations.AddField(
            model_name="faceenrollment",
            name="backend_stale",
            field=models.BooleanField(
                default=False,
                help_text="Recognition backend may still hold faces from an earlier enrollment",
            ),
        ),
    ]
