from decimal import Decimal

from sqlalchemy import delete, select

import auth
from config import load_settings
from database import init_db, make_engine, make_session_factory
from models import MenuItem, User

SIZE = {
    "name": "Size",
    "required": True,
    "choices": [
        {"label": "Regular", "price": "0"},
        {"label": "Large", "price": "2.00"},
    ],
}

MENU_ITEMS = [
    # 前菜
    ("Garlic Bread", "Toasted baguette with garlic butter", "4.50", "appetizer", 8, []),
    ("Chicken Wings", "Six wings tossed in house sauce", "8.99", "appetizer", 15, [
        {"name": "Spice Level", "required": True, "choices": ["Mild", "Medium", "Hot"]},
    ]),
    # 主餐
    ("Classic Burger", "Beef patty, lettuce, tomato, cheddar", "10.00", "main-course", 15, [
        SIZE,
        {"name": "Extras", "required": False, "choices": [
            {"label": "Bacon", "price": "1.50"},
            {"label": "Extra Cheese", "price": "1.00"},
            {"label": "Avocado", "price": "1.25"},
        ]},
    ]),
    ("Margherita Pizza", "Tomato, mozzarella, basil", "12.50", "main-course", 20, [SIZE]),
    ("Veggie Bowl", "Quinoa, roasted vegetables, tahini", "11.00", "main-course", 12, []),
    # 副餐
    ("Fries", "Golden and crispy", "3.50", "sides", 6, [SIZE]),
    ("Side Salad", "Fresh greens, vinaigrette", "4.00", "sides", 5, []),
    # 甜點
    ("Chocolate Brownie", "Warm brownie with fudge sauce", "5.50", "dessert", 5, [
        {"name": "Add-on", "required": False, "choices": [{"label": "Ice Cream", "price": "1.50"}]},
    ]),
    # 飲料
    ("Lemonade", "Fresh squeezed", "3.00", "beverage", 3, [SIZE]),
    ("Iced Coffee", "Cold brew over ice", "3.75", "beverage", 3, []),
]

STAFF = [
    ("Admin", "admin@foodhub.com", "Admin123!", "admin"),
    ("Kitchen Staff", "kitchen@foodhub.com", "Kitchen123!", "kitchen"),
]


def init_database(database_url=None):
    engine = make_engine(database_url or load_settings().database_url)
    init_db(engine)
    session = make_session_factory(engine)()

    # 重建菜單
    session.execute(delete(MenuItem))
    for name, description, price, category, prep, options in MENU_ITEMS:
        session.add(MenuItem(
            name=name,
            description=description,
            price=Decimal(price),
            category=category,
            is_available=True,
            preparation_time=prep,
            customization_options=options,
        ))
    session.commit()
    print(f"Menu items seeded: {len(MENU_ITEMS)}")

    # 建立管理員與廚房帳號
    for name, email, password, role in STAFF:
        if session.execute(select(User).where(User.email == email)).scalar_one_or_none():
            print(f"{role} user {email} already exists")
            continue
        auth.create_user(session, name, email, password, role=role)
        print(f"{role} user created: {email} / {password}")

    session.close()
    print("Database initialised")


if __name__ == "__main__":
    init_database()
