import courier.validators
import django.contrib.auth.models
import django.contrib.auth.validators
import django.core.validators
import django.db.models.deletion
import django.utils.timezone
from decimal import Decimal
from django.conf import settings
from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        ('auth', '0012_alter_user_first_name_max_length'),
    ]

    operations = [
        migrations.CreateModel(
            name='User',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('password', models.CharField(max_length=128, verbose_name='password')),
                ('last_login', models.DateTimeField(blank=True, null=True, verbose_name='last login')),
                ('is_superuser', models.BooleanField(default=False, help_text='Designates that this user has all permissions without explicitly assigning them.', verbose_name='superuser status')),
                ('username', models.CharField(error_messages={'unique': 'A user with that username already exists.'}, help_text='Required. 150 characters or fewer. Letters, digits and @/./+/-/_ only.', max_length=150, unique=True, validators=[django.contrib.auth.validators.UnicodeUsernameValidator()], verbose_name='username')),
                ('first_name', models.CharField(blank=True, max_length=150, verbose_name='first name')),
                ('last_name', models.CharField(blank=True, max_length=150, verbose_name='last name')),
                ('is_staff', models.BooleanField(default=False, help_text='Designates whether the user can log into this admin site.', verbose_name='staff status')),
                ('is_active', models.BooleanField(default=True, help_text='Designates whether this user should be treated as active. Unselect this instead of deleting accounts.', verbose_name='active')),
                ('date_joined', models.DateTimeField(default=django.utils.timezone.now, verbose_name='date joined')),
                ('email', models.EmailField(error_messages={'unique': 'A user with that email already exists.'}, max_length=254, unique=True, verbose_name='email address')),
                ('avatar_url', models.URLField(blank=True, help_text='Opaque avatar URL served by the image store.', max_length=500, null=True, verbose_name='avatar url')),
                ('avg_rating', models.DecimalField(decimal_places=2, default=Decimal('0.00'), help_text='Average score received, maintained from ratings.', max_digits=3, validators=[django.core.validators.MinValueValidator(Decimal('0.00')), django.core.validators.MaxValueValidator(Decimal('5.00'))], verbose_name='average rating')),
                ('ratings_count', models.PositiveIntegerField(default=0, help_text='Number of ratings received.', verbose_name='ratings count')),
                ('groups', models.ManyToManyField(blank=True, help_text='The groups this user belongs to. A user will get all permissions granted to each of their groups.', related_name='user_set', related_query_name='user', to='auth.group', verbose_name='groups')),
                ('user_permissions', models.ManyToManyField(blank=True, help_text='Specific permissions for this user.', related_name='user_set', related_query_name='user', to='auth.permission', verbose_name='user permissions')),
            ],
            options={
                'verbose_name': 'user',
                'verbose_name_plural': 'users',
                'ordering': ['-date_joined'],
            },
            managers=[
                ('objects', django.contrib.auth.models.UserManager()),
            ],
        ),
        migrations.CreateModel(
            name='Announcement',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('title', models.CharField(max_length=200, verbose_name='title')),
                ('departure_city', models.CharField(max_length=120, verbose_name='departure city')),
                ('departure_country', models.CharField(blank=True, default='', max_length=120, verbose_name='departure country')),
                ('destination_city', models.CharField(max_length=120, verbose_name='destination city')),
                ('destination_country', models.CharField(blank=True, default='', max_length=120, verbose_name='destination country')),
                ('departure_date', models.DateField(verbose_name='departure date')),
                ('available_space', models.DecimalField(decimal_places=2, help_text='Luggage capacity in kilos', max_digits=7, validators=[django.core.validators.MinValueValidator(Decimal('0.00'))], verbose_name='available space')),
                ('price_per_kg', models.DecimalField(decimal_places=2, help_text='Informational price per kilo', max_digits=8, validators=[django.core.validators.MinValueValidator(Decimal('0.00'))], verbose_name='price per kg')),
                ('status', models.CharField(choices=[('active', 'Active'), ('completed', 'Completed'), ('cancelled', 'Cancelled')], default='active', max_length=20, verbose_name='status')),
                ('created_at', models.DateTimeField(auto_now_add=True, verbose_name='created at')),
                ('updated_at', models.DateTimeField(auto_now=True, verbose_name='updated at')),
                ('traveler', models.ForeignKey(help_text='Traveler offering the luggage space', on_delete=django.db.models.deletion.CASCADE, related_name='announcements', to=settings.AUTH_USER_MODEL)),
            ],
            options={
                'verbose_name': 'announcement',
                'verbose_name_plural': 'announcements',
                'ordering': ['-created_at'],
                'indexes': [
                    models.Index(fields=['traveler'], name='courier_ann_traveler_idx'),
                    models.Index(fields=['departure_date'], name='courier_ann_departure_idx'),
                ],
            },
        ),
        migrations.CreateModel(
            name='Booking',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('requested_kilos', models.DecimalField(decimal_places=2, max_digits=7, validators=[courier.validators.validate_positive_kilos], verbose_name='requested kilos')),
                ('message', models.TextField(blank=True, help_text='Optional note sent with the booking request', null=True, verbose_name='message')),
                ('status', models.CharField(choices=[('pending', 'Pending'), ('approved', 'Approved'), ('rejected', 'Rejected'), ('cancelled', 'Cancelled'), ('handed_over', 'Handed over'), ('delivered', 'Delivered')], default='pending', max_length=20, verbose_name='status')),
                ('handoff_step', models.CharField(choices=[('none', 'None'), ('sender_confirmed', 'Sender confirmed'), ('handed_over', 'Handed over'), ('delivered', 'Delivered')], default='none', max_length=20, verbose_name='handoff step')),
                ('delivery_code', models.CharField(blank=True, help_text='One-time code issued when the goods are handed over', max_length=10, null=True, verbose_name='delivery code')),
                ('created_at', models.DateTimeField(auto_now_add=True, verbose_name='created at')),
                ('updated_at', models.DateTimeField(auto_now=True, verbose_name='updated at')),
                ('announcement', models.ForeignKey(help_text='Announcement the kilos are booked against', on_delete=django.db.models.deletion.CASCADE, related_name='bookings', to='courier.announcement')),
                ('sender', models.ForeignKey(help_text='User shipping the goods', on_delete=django.db.models.deletion.CASCADE, related_name='sent_bookings', to=settings.AUTH_USER_MODEL)),
            ],
            options={
                'verbose_name': 'booking',
                'verbose_name_plural': 'bookings',
                'ordering': ['-created_at'],
                'indexes': [
                    models.Index(fields=['sender'], name='courier_bkg_sender_idx'),
                    models.Index(fields=['announcement'], name='courier_bkg_announcement_idx'),
                    models.Index(fields=['status'], name='courier_bkg_status_idx'),
                ],
            },
        ),
        migrations.CreateModel(
            name='Message',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('content', models.TextField(max_length=2000, verbose_name='content')),
                ('is_system', models.BooleanField(default=False, help_text='True for entries generated by the handoff protocol', verbose_name='system message')),
                ('read_at', models.DateTimeField(blank=True, null=True, verbose_name='read at')),
                ('created_at', models.DateTimeField(auto_now_add=True, db_index=True, verbose_name='created at')),
                ('booking', models.ForeignKey(help_text='Booking owning the conversation', on_delete=django.db.models.deletion.CASCADE, related_name='messages', to='courier.booking')),
                ('sender', models.ForeignKey(help_text='Sender or traveler of the booking', on_delete=django.db.models.deletion.CASCADE, related_name='chat_messages', to=settings.AUTH_USER_MODEL)),
            ],
            options={
                'verbose_name': 'message',
                'verbose_name_plural': 'messages',
                'ordering': ['created_at', 'id'],
                'indexes': [
                    models.Index(fields=['booking', 'created_at'], name='courier_msg_bkg_created_idx'),
                    models.Index(fields=['booking', 'read_at'], name='courier_msg_bkg_read_idx'),
                ],
            },
        ),
        migrations.CreateModel(
            name='Rating',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('score', models.PositiveSmallIntegerField(help_text='Score from 1 to 5', validators=[django.core.validators.MinValueValidator(1, message='Score must be at least 1.'), django.core.validators.MaxValueValidator(5, message='Score must be at most 5.')], verbose_name='score')),
                ('comment', models.TextField(blank=True, null=True, verbose_name='comment')),
                ('created_at', models.DateTimeField(auto_now_add=True, verbose_name='created at')),
                ('booking', models.ForeignKey(help_text='Delivered booking being rated', on_delete=django.db.models.deletion.CASCADE, related_name='ratings', to='courier.booking')),
                ('rated', models.ForeignKey(help_text='User receiving the rating', on_delete=django.db.models.deletion.CASCADE, related_name='ratings_received', to=settings.AUTH_USER_MODEL)),
                ('rater', models.ForeignKey(help_text='User giving the rating', on_delete=django.db.models.deletion.CASCADE, related_name='ratings_given', to=settings.AUTH_USER_MODEL)),
            ],
            options={
                'verbose_name': 'rating',
                'verbose_name_plural': 'ratings',
                'ordering': ['-created_at'],
                'indexes': [
                    models.Index(fields=['rated'], name='courier_rating_rated_idx'),
                ],
                'constraints': [
                    models.UniqueConstraint(fields=('booking', 'rater'), name='unique_rating_per_booking_rater'),
                    models.CheckConstraint(condition=models.Q(('score__gte', 1), ('score__lte', 5)), name='rating_score_between_1_and_5'),
                ],
            },
        ),
    ]
