import uuid

import django.core.validators
from django.db import migrations, models

import core.models


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        ('auth', '0012_alter_user_first_name_max_length'),
    ]

    operations = [
        migrations.CreateModel(
            name='User',
            fields=[
                ('password', models.CharField(max_length=128, verbose_name='password')),
                ('last_login', models.DateTimeField(blank=True, null=True, verbose_name='last login')),
                ('is_superuser', models.BooleanField(default=False, help_text='Designates that this user has all permissions without explicitly assigning them.', verbose_name='superuser status')),
                ('id', models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ('phone_number', models.CharField(max_length=16, unique=True, validators=[django.core.validators.RegexValidator(message='Formato: +5511999999999', regex='^\\+?[0-9]{10,15}$')], verbose_name='Telefone')),
                ('full_name', models.CharField(blank=True, max_length=150, verbose_name='Nome completo')),
                ('role', models.CharField(choices=[('ADMIN', 'Administrador'), ('CLIENT', 'Cliente'), ('COURIER', 'Entregador')], default='CLIENT', max_length=20, verbose_name='Papel')),
                ('city', models.CharField(blank=True, max_length=100, verbose_name='Cidade')),
                ('is_online', models.BooleanField(default=False, verbose_name='Online')),
                ('last_seen_at', models.DateTimeField(blank=True, null=True, verbose_name='Visto por último')),
                ('is_verified', models.BooleanField(default=False, verbose_name='Documentos verificados')),
                ('is_active', models.BooleanField(default=True)),
                ('is_staff', models.BooleanField(default=False)),
                ('date_joined', models.DateTimeField(auto_now_add=True)),
                ('groups', models.ManyToManyField(blank=True, help_text='The groups this user belongs to. A user will get all permissions granted to each of their groups.', related_name='user_set', related_query_name='user', to='auth.group', verbose_name='groups')),
                ('user_permissions', models.ManyToManyField(blank=True, help_text='Specific permissions for this user.', related_name='user_set', related_query_name='user', to='auth.permission', verbose_name='user permissions')),
            ],
            options={
                'verbose_name': 'Usuário',
                'verbose_name_plural': 'Usuários',
                'ordering': ['-date_joined'],
                'indexes': [models.Index(fields=['role', 'is_online', 'city'], name='core_user_dispatch_idx')],
            },
            managers=[
                ('objects', core.models.UserManager()),
            ],
        ),
    ]
