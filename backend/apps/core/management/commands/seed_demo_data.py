import random
from django.contrib.auth import get_user_model
from django.core.management.base import BaseCommand
from django.db import transaction
from django.utils.text import slugify
from faker import Faker

from apps.drivers.models import Driver
from apps.orders.models import Order
from apps.restaurants.models import Restaurant

User = get_user_model()

# Demo city centre (Paris)
CENTER_LAT = 48.8566
CENTER_LNG = 2.3522


class Command(BaseCommand):
    help = "Creates demo restaurants, verified drivers and delivery orders around a city centre."

    def add_arguments(self, parser):
        parser.add_argument("--restaurants", type=int, default=5)
        parser.add_argument("--drivers", type=int, default=15)
        parser.add_argument("--orders", type=int, default=20)
        parser.add_argument("--seed", type=int, default=42)

    def handle(self, *args, **options):
        fake = Faker("fr_FR")
        Faker.seed(options["seed"])
        random.seed(options["seed"])

        def jitter(spread=0.03):
            return (
                round(CENTER_LAT + random.uniform(-spread, spread), 6),
                round(CENTER_LNG + random.uniform(-spread, spread), 6),
            )

        with transaction.atomic():
            self.stdout.write("Generating restaurants...")
            restaurants = []
            for _ in range(options["restaurants"]):
                name = fake.company()[:150]
                lat, lng = jitter()
                restaurants.append(Restaurant.objects.create(
                    name=name,
                    slug=f"{slugify(name)[:150]}-{random.randint(1000, 9999)}",
                    phone=fake.phone_number()[:20],
                    street=fake.street_address(),
                    city="Paris",
                    postal_code=fake.postcode(),
                    latitude=lat,
                    longitude=lng,
                ))

            self.stdout.write("Generating drivers...")
            for i in range(options["drivers"]):
                user = User.objects.create_user(
                    username=f"driver_{fake.unique.user_name()}"[:150],
                    first_name=fake.first_name(),
                    last_name=fake.last_name(),
                    password="demo-driver",
                )
                lat, lng = jitter(0.05)
                driver = Driver.objects.create(
                    user=user,
                    phone=fake.phone_number()[:20],
                    status="verified",
                    vehicle_type=random.choice([choice for choice, _ in Driver.VEHICLE_CHOICES]),
                    current_latitude=lat,
                    current_longitude=lng,
                    average_rating=round(random.uniform(3.5, 5.0), 1),
                    total_ratings=random.randint(5, 200),
                    completion_rate=round(random.uniform(0.75, 1.0), 2),
                    bank_account_holder=f"{user.first_name} {user.last_name}",
                    iban=fake.iban(),
                )
                # Every third driver only serves one restaurant
                if i % 3 == 0 and restaurants:
                    driver.restaurants.add(random.choice(restaurants))

            self.stdout.write("Generating customers and orders...")
            customers = [
                User.objects.create_user(
                    username=f"customer_{fake.unique.user_name()}"[:150],
                    first_name=fake.first_name(),
                    last_name=fake.last_name(),
                    password="demo-customer",
                )
                for _ in range(max(1, options["orders"] // 4))
            ]
            for _ in range(options["orders"]):
                lat, lng = jitter(0.06)
                Order.objects.create(
                    customer=random.choice(customers),
                    restaurant=random.choice(restaurants) if restaurants else None,
                    status="confirmed",
                    fulfillment_type="delivery",
                    total_amount=round(random.uniform(12, 80), 2),
                    delivery_address={
                        "street": fake.street_address(),
                        "city": "Paris",
                        "postal_code": fake.postcode(),
                        "country": "France",
                        "latitude": lat,
                        "longitude": lng,
                    },
                    delivery_instructions=random.choice(["", "Ring twice", "Leave at the door", "Code 1234B"]),
                )

        self.stdout.write(self.style.SUCCESS(
            f"Created {options['restaurants']} restaurants, {options['drivers']} drivers, {options['orders']} orders."
        ))
