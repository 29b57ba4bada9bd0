from rest_framework import serializers
from .models import User
from drivers.models import DriverProfile
from rides.models import ServiceTier


class UserSerializer(serializers.ModelSerializer):
    profile_picture_url = serializers.SerializerMethodField(read_only=True)

    class Meta:
        model = User
        fields = [
            "id",
            "username",
            "email",
            "role",
            "phone_number",
            "profile_picture",
            "profile_picture_url",
        ]
        read_only_fields = ["id", "role", "profile_picture_url"]
        extra_kwargs = {
            "profile_picture": {"write_only": True, "required": False}
        }

    def get_profile_picture_url(self, obj):
        """Absolute URL when a request is available, so mobile clients can load it directly."""
        if obj.profile_picture:
            request = self.context.get("request")
            if request:
                return request.build_absolute_uri(obj.profile_picture.url)
            return obj.profile_picture.url
        return None


class RiderBasicSerializer(serializers.ModelSerializer):
    """Basic rider representation used inside ride responses."""
    class Meta:
        model = User
        fields = ['id', 'username', 'phone_number']


class RegisterSerializer(serializers.ModelSerializer):
    password = serializers.CharField(write_only=True, min_length=8)
    role = serializers.ChoiceField(choices=[User.ROLE_RIDER, User.ROLE_DRIVER], default=User.ROLE_RIDER)
    vehicle_number = serializers.CharField(required=False)
    service_tier = serializers.ChoiceField(choices=ServiceTier.choices, required=False)

    class Meta:
        model = User
        fields = ['username', 'password', 'email', 'role', 'phone_number', 'vehicle_number', 'service_tier']

    def validate_email(self, value):
        if value and User.objects.filter(email=value).exists():
            raise serializers.ValidationError("Email already exists")
        return value

    def validate(self, data):
        # Drivers need a vehicle before they can be approved
        if data['role'] == User.ROLE_DRIVER and not data.get('vehicle_number'):
            raise serializers.ValidationError({
                'vehicle_number': 'Vehicle number is required for drivers'
            })
        return data

    def create(self, validated_data):
        vehicle_number = validated_data.pop('vehicle_number', None)
        service_tier = validated_data.pop('service_tier', ServiceTier.STANDARD)

        user = User.objects.create_user(
            username=validated_data['username'],
            email=validated_data.get('email', ''),
            password=validated_data['password'],
            role=validated_data['role'],
            phone_number=validated_data.get('phone_number', ''),
        )

        if user.role == User.ROLE_DRIVER:
            DriverProfile.objects.create(
                user=user,
                vehicle_number=vehicle_number,
                service_tier=service_tier,
            )

        return user
