from typing import Dict, Optional

from .models import CharacterDescriptor, ProcessedPageResult


class PromptManager:
    """Builds the static prompts sent to the generation and analysis models."""

    # --- Page Replacement --- #

    def generate_page_prompt(self,
                             child_name: str,
                             character: CharacterDescriptor,
                             previous_page: Optional[ProcessedPageResult] = None) -> str:
        """Prompt for replacing the main character of one page with the child.

        The first image sent with this prompt is the child's photo, the second
        is the book page.
        """
        prompt_parts = [
            "You are given two images: the FIRST is a reference photo of a child, "
            "the SECOND is a page from a children's book.",
            "",
            f"TASK: Find the main human character in the book page and replace them with a "
            f"cartoonized version of {child_name}, drawn in the exact illustration style of the page.",
            "",
            "CHARACTER TO REPLACE:",
            f"- Description: {character.description or 'main character'}",
            f"- Position: {character.position or 'as in the original'}",
            f"- Size: {character.size or 'as in the original'}",
            f"- Emotion: {character.emotion or 'as in the original'}",
            f"- Pose: {character.pose or 'as in the original'}",
            "",
            "REQUIREMENTS:",
            f"1. Use {child_name}'s facial features, hair color, hair style and skin tone from the reference photo.",
            "2. Keep the exact same pose, position, size, expression and body language as the original character.",
            "3. Keep the clothing style of the original character.",
            "4. Preserve the background, all text, all animals and all other characters exactly as they are.",
            "5. Match the art style, line work, shading, color palette and lighting of the page.",
            "6. Remove any scan artifacts or watermarks from the page.",
        ]

        if previous_page is not None:
            prompt_parts.extend([
                "",
                f"CONSISTENCY: {child_name} was already drawn on page {previous_page.page_number} of this book. "
                f"Draw {child_name} so they look like the same character from page to page.",
            ])

        prompt_parts.extend([
            "",
            f"CRITICAL: Return ONLY the edited page image, with {child_name} naturally integrated as the main character.",
        ])
        return "\n".join(prompt_parts)

    # --- Analysis --- #

    def generate_page_analysis_prompt(self, page_number: int) -> str:
        return f"""You are an expert at analyzing children's book illustrations. Analyze this book page (page {page_number}).

For EACH visible character (humans, animals, creatures) describe appearance, position in the image,
size relative to the page (large/medium/small), emotion and pose, whether it is the story's main
character, whether it is human, whether it is an animal, and whether it should be replaced with the child.

Return ONLY valid JSON (no markdown, no extra text):
{{
  "pageNumber": {page_number},
  "characters": [
    {{
      "isMainCharacter": true,
      "isHuman": true,
      "isAnimal": false,
      "description": "detailed physical description",
      "position": "specific position",
      "size": "large/medium/small",
      "emotion": "specific emotion",
      "pose": "specific pose/action",
      "replaceWithChild": true
    }}
  ],
  "scene": {{
    "action": "what's happening",
    "setting": "where it takes place",
    "mood": "specific mood"
  }}
}}"""

    def generate_cover_analysis_prompt(self, book: Dict[str, str]) -> str:
        return f"""Analyze this book cover image in detail. Describe:
1. Visual style and art technique (illustration style, color palette, mood)
2. Main character appearance and position (if present)
3. Background elements and setting
4. Typography and text placement
5. Overall composition and layout

Book title: {book.get('name') or 'N/A'}
Genre: {book.get('genre') or "Children's Book"}

Provide a structured analysis that can be used to recreate a similar style."""

    def generate_child_analysis_prompt(self, child: Dict[str, str]) -> str:
        return f"""Analyze this child's photo and describe:
1. Physical appearance (hair color, hair style, eye color, skin tone)
2. Approximate age
3. Facial features
4. Expression and mood
5. Clothing or accessories visible

Child's name: {child.get('name') or 'N/A'}
Age: {child.get('age') or 'N/A'}

Provide natural descriptions suitable for creating an illustrated character."""

    # --- Cover --- #

    def generate_cover_prompt(self,
                              cover_analysis: Dict[str, str],
                              child_features: Dict[str, str],
                              book: Dict[str, str]) -> str:
        """Template prompt for the personalized cover (original cover first, child photo second)."""
        book_name = book.get('name') or "Adventure Book"
        child_name = child_features.get('name') or "the child"
        genre = book.get('genre') or "adventure"

        lines = [
            "Create a personalized children's book cover. The FIRST image is the original cover, "
            "the SECOND image is a photo of the child.",
            "",
            "BOOK INFORMATION:",
            f"- Title: \"{book_name}\"",
            f"- Genre: {genre}",
            "",
            "VISUAL STYLE (from original cover):",
            f"- Art Style: {cover_analysis['style']}",
            f"- Color Palette: {cover_analysis['color_palette']}",
            f"- Composition: {cover_analysis['composition']}",
            f"- Character Position: {cover_analysis['character_position']}",
            "",
            f"MAIN CHARACTER (personalized for {child_name}):",
            f"- Replace the main character with this child's appearance: {child_features['appearance']}",
            f"- Key features to maintain: {child_features['features']}",
        ]
        if child_features.get('age'):
            lines.append(f"- Age: {child_features['age']} years old")

        lines.extend([
            "",
            "REQUIREMENTS:",
            "1. Keep the original cover's artistic style, mood, color palette and lighting",
            "2. Keep the same background, setting, composition and layout",
            "3. Replace ONLY the main character with the personalized child character",
            "4. Preserve the title text and its placement",
            f"5. Make it look like {child_name} was always meant to be the story's hero",
        ])
        return "\n".join(lines)
