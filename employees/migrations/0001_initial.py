from django.db import migrations, models
import django.db.models.deletion
import uuid


class Migration(migrations.Migration):

    initial = True

    dependencies = []

    operations = [
        migrations.CreateModel(
            name='Branch',
            fields=[
                ('id', models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ('company_id', models.IntegerField(db_index=True, help_text='ID of the company (from main database)')),
                ('name', models.CharField(max_length=255)),
                ('code', models.CharField(blank=True, default='', help_text='Branch code/identifier', max_length=50)),
                ('hr_branch_id', models.IntegerField(blank=True, help_text='Company id of this branch in the HR backend', null=True)),
                ('address', models.TextField(blank=True, default='')),
                ('is_active', models.BooleanField(default=True)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
            ],
            options={
                'verbose_name': 'Branch',
                'verbose_name_plural': 'Branches',
                'db_table': 'branches',
                'ordering': ['name'],
            },
        ),
        migrations.CreateModel(
            name='Employee',
            fields=[
                ('id', models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ('company_id', models.IntegerField(db_index=True, help_text='ID of the company (from main database)')),
                ('user_id', models.IntegerField(db_index=True, help_text='ID of the global user (from main database)')),
                ('email', models.EmailField(db_index=True, max_length=254)),
                ('first_name', models.CharField(max_length=150)),
                ('last_name', models.CharField(max_length=150)),
                ('employee_number', models.PositiveIntegerField(blank=True, null=True)),
                ('user_key', models.CharField(blank=True, max_length=64, null=True)),
                ('employment_status', models.CharField(choices=[('active', 'Active'), ('resigned', 'Resigned'), ('inactive', 'Inactive')], default='active', max_length=20)),
                ('is_active', models.BooleanField(default=True)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
            ],
            options={
                'db_table': 'employees',
                'ordering': ['last_name', 'first_name'],
                'unique_together': {('company_id', 'user_id')},
            },
        ),
        migrations.CreateModel(
            name='EmployeeRole',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('role_id', models.UUIDField(help_text='ID of the role (from main database)')),
                ('assigned_by_id', models.IntegerField(blank=True, null=True)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('employee', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='roles', to='employees.employee')),
            ],
            options={
                'db_table': 'employee_roles',
                'unique_together': {('employee', 'role_id')},
            },
        ),
    ]
