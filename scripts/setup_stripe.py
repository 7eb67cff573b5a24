import argparse
import os

import stripe
from dotenv import load_dotenv

from json4ai.core.models import Plan
from json4ai.core.plans import PLAN_CATALOG

# Load environment variables
load_dotenv()

# Initialize Stripe
stripe.api_key = os.getenv('STRIPE_SECRET_KEY')

PAID_PLANS = [Plan.STARTER, Plan.PREMIUM]


def create_products_and_prices(recurring: bool = False) -> dict:
    """Create one product and price per paid plan in Stripe"""
    price_ids = {}
    for plan in PAID_PLANS:
        details = PLAN_CATALOG[plan]
        product = stripe.Product.create(
            name=f"JSON4AI {details.display_name} Plan",
            description=", ".join(details.features),
            metadata={
                "plan": plan.value
            }
        )

        price_params = dict(
            product=product.id,
            unit_amount=int(round(details.price * 100)),
            currency=details.currency.lower(),
            metadata={
                "plan": plan.value,
                "credits": "unlimited" if details.is_unlimited else str(details.credit_grant)
            }
        )
        if recurring:
            price_params["recurring"] = {"interval": "month"}
        price = stripe.Price.create(**price_params)
        price_ids[plan] = price.id

        billing = "/month" if recurring else f" for {details.duration_days} days"
        print(f"\n{details.display_name} Plan (${details.price:.2f}{billing}):")
        print(f"Product ID: {product.id}")
        print(f"Price ID: {price.id}")
        print("Features:")
        for feature in details.features:
            print(f"- {feature}")

    print("\n✅ Products and prices created successfully!")
    return price_ids


def update_env_file(price_ids: dict, path: str = '.env') -> None:
    """Update .env file with new price IDs"""
    keys = {f"STRIPE_{plan.value.upper()}_PRICE_ID": price_id for plan, price_id in price_ids.items()}

    with open(path, 'r') as f:
        env_lines = f.readlines()

    with open(path, 'w') as f:
        for line in env_lines:
            key = line.split('=', 1)[0]
            if key in keys:
                f.write(f"{key}={keys.pop(key)}\n")
            else:
                f.write(line)
        for key, value in keys.items():
            f.write(f"{key}={value}\n")

    print(f"\n✅ {path} updated with new price IDs")


def main():
    parser = argparse.ArgumentParser(description="Create JSON4AI products and prices in Stripe")
    parser.add_argument('--recurring', action='store_true', help="Create monthly recurring prices")
    parser.add_argument('--env-file', default='.env', help="Env file to update with the price IDs")
    args = parser.parse_args()

    try:
        price_ids = create_products_and_prices(recurring=args.recurring)
        if os.path.exists(args.env_file):
            update_env_file(price_ids, args.env_file)
    except stripe.StripeError as e:
        print(f"❌ Error creating products and prices: {str(e)}")


if __name__ == "__main__":
    main()
