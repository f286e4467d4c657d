from django.db import models
from django.utils import timezone


class Restaurant(models.Model):
    """
    Pickup point for deliveries. Owned by the ordering platform; the
    dispatch core only reads its address and coordinates.
    """
    name = models.CharField(max_length=150)
    slug = models.SlugField(max_length=160, unique=True)
    phone = models.CharField(max_length=20, blank=True)

    street = models.CharField(max_length=255, blank=True)
    city = models.CharField(max_length=100, blank=True)
    postal_code = models.CharField(max_length=20, blank=True)
    country = models.CharField(max_length=100, default="France")
    latitude = models.FloatField(null=True, blank=True)
    longitude = models.FloatField(null=True, blank=True)

    is_active = models.BooleanField(default=True)
    created_at = models.DateTimeField(default=timezone.now)

    class Meta:
        ordering = ("name",)

    @property
    def has_coordinates(self):
        return self.latitude is not None and self.longitude is not None

    def pickup_address(self):
        return {
            "street": self.street,
            "city": self.city,
            "postal_code": self.postal_code,
            "country": self.country or "France",
            "latitude": self.latitude,
            "longitude": self.longitude,
        }

    def __str__(self):
        return self.name
