import uuid

import django.db.models.deletion
from django.conf import settings
from django.db import migrations, models


SHIPMENT_STATES = [
    ('CREATED', 'Envio criado'),
    ('PRICED', 'Preço calculado'),
    ('PAYMENT_PENDING', 'Aguardando pagamento'),
    ('PAID', 'Pagamento confirmado'),
    ('DISPATCHING', 'Procurando entregador'),
    ('ASSIGNED', 'Entregador atribuído'),
    ('ARRIVED_PICKUP', 'Entregador chegou na coleta'),
    ('PICKED_UP', 'Pacote coletado'),
    ('EN_ROUTE', 'Em trânsito'),
    ('ARRIVED_DROPOFF', 'Entregador chegou na entrega'),
    ('DELIVERED', 'Pacote entregue'),
    ('CANCELLED', 'Envio cancelado'),
    ('OFFERED', 'Aberto para ofertas'),
    ('COUNTER_OFFER', 'Contra-oferta pendente'),
    ('ACCEPTED_OFFER', 'Oferta aceita'),
    ('COURIER_ABANDONED', 'Entregador abandonou'),
]

WINDOW_OUTCOMES = [
    ('OPEN', 'Aberta'),
    ('ACCEPTED', 'Aceita'),
    ('REJECTED', 'Recusada'),
    ('TIMED_OUT', 'Expirada'),
    ('CANCELLED', 'Fechada pelo entregador'),
    ('SUPERSEDED', 'Perdida para outro entregador'),
]


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        migrations.CreateModel(
            name='Shipment',
            fields=[
                ('id', models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ('pickup', models.JSONField(verbose_name='Coleta')),
                ('dropoff', models.JSONField(verbose_name='Entrega')),
                ('city', models.CharField(blank=True, max_length=100, verbose_name='Cidade')),
                ('package', models.JSONField(verbose_name='Pacote')),
                ('quote', models.JSONField(verbose_name='Cotação')),
                ('agreed_price', models.DecimalField(blank=True, decimal_places=2, max_digits=10, null=True, verbose_name='Preço negociado')),
                ('eta_min', models.PositiveIntegerField(blank=True, null=True, verbose_name='ETA (min)')),
                ('state', models.CharField(choices=SHIPMENT_STATES, default='CREATED', max_length=20, verbose_name='Estado')),
                ('offers', models.JSONField(blank=True, default=list, verbose_name='Ofertas')),
                ('current_offer', models.JSONField(blank=True, null=True, verbose_name='Oferta atual')),
                ('accepted_offer', models.JSONField(blank=True, null=True, verbose_name='Oferta aceita')),
                ('rejection_count', models.PositiveIntegerField(default=0, verbose_name='Rejeições')),
                ('escalated_at', models.DateTimeField(blank=True, null=True, verbose_name='Escalado em')),
                ('notification_count', models.PositiveIntegerField(default=0, verbose_name='Notificações')),
                ('last_notification_at', models.DateTimeField(blank=True, null=True, verbose_name='Última notificação')),
                ('timeline', models.JSONField(blank=True, default=list, verbose_name='Linha do tempo')),
                ('picked_up_at', models.DateTimeField(blank=True, null=True)),
                ('delivered_at', models.DateTimeField(blank=True, null=True)),
                ('version', models.PositiveIntegerField(default=0)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
                ('client', models.ForeignKey(on_delete=django.db.models.deletion.PROTECT, related_name='client_shipments', to=settings.AUTH_USER_MODEL, verbose_name='Cliente')),
                ('courier', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='courier_shipments', to=settings.AUTH_USER_MODEL, verbose_name='Entregador')),
            ],
            options={
                'verbose_name': 'Envio',
                'verbose_name_plural': 'Envios',
                'ordering': ['-created_at'],
                'indexes': [
                    models.Index(fields=['state', 'city'], name='shipment_state_city_idx'),
                    models.Index(fields=['courier', 'state'], name='shipment_courier_state_idx'),
                    models.Index(fields=['client', 'created_at'], name='shipment_client_created_idx'),
                ],
            },
        ),
        migrations.CreateModel(
            name='DecisionWindow',
            fields=[
                ('id', models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ('opened_at', models.DateTimeField(auto_now_add=True)),
                ('deadline', models.DateTimeField(verbose_name='Prazo')),
                ('outcome', models.CharField(choices=WINDOW_OUTCOMES, default='OPEN', max_length=20, verbose_name='Resultado')),
                ('closed_at', models.DateTimeField(blank=True, null=True)),
                ('courier', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='decision_windows', to=settings.AUTH_USER_MODEL, verbose_name='Entregador')),
                ('shipment', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='decision_windows', to='shipments.shipment', verbose_name='Envio')),
            ],
            options={
                'verbose_name': 'Janela de decisão',
                'verbose_name_plural': 'Janelas de decisão',
                'ordering': ['-opened_at'],
                'indexes': [
                    models.Index(fields=['outcome', 'deadline'], name='window_outcome_deadline_idx'),
                    models.Index(fields=['shipment', 'courier'], name='window_shipment_courier_idx'),
                ],
            },
        ),
    ]
