from django.conf import settings
from django.db import migrations, models
import django.db.models.deletion
import django.utils.timezone


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        ('accounts', '0001_initial'),
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        migrations.CreateModel(
            name='EmployeeIdentity',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('email', models.EmailField(max_length=254, unique=True)),
                ('employee_number', models.PositiveIntegerField(db_index=True)),
                ('website_key', models.CharField(max_length=64, unique=True)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(default=django.utils.timezone.now)),
            ],
            options={
                'verbose_name': 'Employee Identity',
                'verbose_name_plural': 'Employee Identities',
                'db_table': 'employee_identities',
            },
        ),
        migrations.CreateModel(
            name='UserCompanyAccess',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('is_active', models.BooleanField(default=True)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
                ('company', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='user_access', to='accounts.company')),
                ('user', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='company_access', to=settings.AUTH_USER_MODEL)),
            ],
            options={
                'db_table': 'user_company_access',
                'unique_together': {('user', 'company')},
            },
        ),
        migrations.CreateModel(
            name='UserCompanyBranch',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('branch_id', models.UUIDField()),
                ('branch_name', models.CharField(max_length=255)),
                ('external_branch_id', models.IntegerField(help_text='Company id of the branch in the HR backend')),
                ('assignment_type', models.CharField(choices=[('resident', 'Resident'), ('borrow', 'Borrow')], default='borrow', max_length=20)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
                ('company', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='user_branches', to='accounts.company')),
                ('user', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='company_branches', to=settings.AUTH_USER_MODEL)),
            ],
            options={
                'db_table': 'user_company_branches',
                'ordering': ['company_id', 'branch_name'],
                'unique_together': {('user', 'company', 'branch_id')},
            },
        ),
        migrations.CreateModel(
            name='ProvisioningFailureLog',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('context', models.CharField(choices=[('registration', 'Registration approval'), ('assignment', 'Company/branch assignment')], max_length=20)),
                ('company_name', models.CharField(max_length=255)),
                ('branch_id', models.UUIDField(blank=True, null=True)),
                ('branch_name', models.CharField(blank=True, default='', max_length=255)),
                ('error', models.TextField()),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('company', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='+', to='accounts.company')),
                ('registration_request', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='provisioning_failures', to='accounts.registrationrequest')),
                ('user', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='provisioning_failures', to=settings.AUTH_USER_MODEL)),
            ],
            options={
                'db_table': 'provisioning_failure_logs',
                'ordering': ['-created_at'],
                'indexes': [models.Index(fields=['user', 'created_at'], name='provisioning_fail_user_idx')],
            },
        ),
    ]
