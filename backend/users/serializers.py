from __future__ import annotations

import re
from typing import Optional

from django.contrib.auth import get_user_model
from django.contrib.auth.password_validation import validate_password
from rest_framework import serializers
from rest_framework.exceptions import AuthenticationFailed
from rest_framework_simplejwt.serializers import TokenObtainPairSerializer

User = get_user_model()
NON_DIGITS = re.compile(r"\D+")
SWISS_PREFIX = "+41"


def to_e164(raw: str) -> str:
    """
    Normalize a phone number to E.164.

    Numbers written without a country code are read as Swiss national
    numbers (0XX XXX XX XX).
    """
    text = raw.strip()
    digits = NON_DIGITS.sub("", text)
    if not digits:
        raise serializers.ValidationError("Enter a phone number.")
    if text.startswith("+"):
        number = f"+{digits}"
    elif len(digits) == 10 and digits.startswith("0"):
        number = SWISS_PREFIX + digits[1:]
    else:
        raise serializers.ValidationError("Include country code (e.g. +41...).")
    if not 11 <= len(number) <= 17:
        raise serializers.ValidationError("Enter a valid phone number.")
    return number


class PhoneField(serializers.CharField):
    """Optional phone number stored in E.164 form; blank becomes null."""

    def __init__(self, **kwargs):
        kwargs.setdefault("required", False)
        kwargs.setdefault("allow_blank", True)
        kwargs.setdefault("allow_null", True)
        super().__init__(**kwargs)

    def to_internal_value(self, data):
        value = super().to_internal_value(data)
        return to_e164(value) if value else None


def _phone_taken(phone: str | None, exclude_pk: int | None = None) -> bool:
    if not phone:
        return False
    qs = User.objects.filter(phone=phone)
    if exclude_pk is not None:
        qs = qs.exclude(pk=exclude_pk)
    return qs.exists()


def resolve_login_user(identifier: str) -> Optional[User]:
    """Find the account behind an email, phone number or username."""
    value = (identifier or "").strip()
    if not value:
        return None
    if "@" in value:
        by_email = User.objects.filter(email__iexact=value).first()
        if by_email is not None:
            return by_email
    try:
        phone = to_e164(value)
    except serializers.ValidationError:
        phone = None
    if phone:
        by_phone = User.objects.filter(phone=phone).first()
        if by_phone is not None:
            return by_phone
    return User.objects.filter(username__iexact=value).first()


class ProfileSerializer(serializers.ModelSerializer):
    phone = PhoneField()

    class Meta:
        model = User
        fields = (
            "id",
            "username",
            "email",
            "phone",
            "first_name",
            "last_name",
            "can_rent",
            "can_list",
            "date_joined",
        )
        read_only_fields = ("id", "username", "date_joined")

    def validate_phone(self, value):
        if _phone_taken(value, exclude_pk=self.instance.pk):
            raise serializers.ValidationError("A user with this phone already exists.")
        return value


class SignupSerializer(serializers.ModelSerializer):
    """Create an account from a username, a password and an email or phone."""

    password = serializers.CharField(write_only=True)
    email = serializers.EmailField(required=False, allow_blank=True)
    phone = PhoneField()

    class Meta:
        model = User
        fields = (
            "id",
            "username",
            "email",
            "phone",
            "password",
            "first_name",
            "last_name",
            "can_rent",
            "can_list",
        )

    def validate_password(self, value: str) -> str:
        validate_password(value)
        return value

    def validate_email(self, value: str) -> str:
        email = (value or "").strip().lower()
        if email and User.objects.filter(email__iexact=email).exists():
            raise serializers.ValidationError("A user with this email already exists.")
        return email

    def validate_phone(self, value):
        if _phone_taken(value):
            raise serializers.ValidationError("A user with this phone already exists.")
        return value

    def validate(self, attrs: dict) -> dict:
        if not attrs.get("email") and not attrs.get("phone"):
            raise serializers.ValidationError(
                {"non_field_errors": ["Provide an email or phone number."]}
            )
        attrs.setdefault("email", "")
        attrs.setdefault("phone", None)
        return attrs

    def create(self, validated_data: dict) -> User:
        password = validated_data.pop("password")
        return User.objects.create_user(password=password, **validated_data)


class FlexibleTokenObtainPairSerializer(TokenObtainPairSerializer):
    """JWT login with ``identifier`` (email, phone or username) or plain ``username``."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.fields["identifier"] = serializers.CharField(required=False, allow_blank=True)
        self.fields[self.username_field].required = False

    def validate(self, attrs: dict) -> dict:
        identifier = attrs.get("identifier") or attrs.get(self.username_field) or ""
        if not identifier or not attrs.get("password"):
            raise serializers.ValidationError(
                {"non_field_errors": ["Provide credentials to log in."]}
            )
        user = resolve_login_user(identifier)
        if user is None:
            raise AuthenticationFailed(self.error_messages["no_active_account"])
        attrs[self.username_field] = user.get_username()
        return super().validate(attrs)
